from __future__ import annotations

import logging
from typing import Iterable, Mapping

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    func,
    insert,
    select,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

metadata = MetaData()

ASSET_CATEGORIES = [
    ("SINGLE_STOCKS", "Single Stocks", True),
    ("ETF_STOCKS", "ETF Stocks", True),
    ("ETF_BONDS", "ETF Bonds", True),
    ("CRYPTO", "Crypto", True),
    ("PRIVATE_EQUITY", "Private Equity", False),
    ("BUSINESS_PROFITS", "Business Profits", False),
    ("REAL_ESTATE", "Real Estate", False),
    ("CASH", "Cash", False),
]

INCOME_CATEGORIES = [
    ("SALARY", "Salary"),
    ("BONUS", "Bonus"),
    ("DIVIDENDS", "Dividends"),
    ("INTEREST", "Interest"),
    ("RENTAL_INCOME", "Rental Income"),
    ("OTHER_INCOME", "Other Income"),
]

EXPENSE_CATEGORIES = [
    ("RENT", "Rent"),
    ("UTILITIES", "Utilities"),
    ("GROCERIES", "Groceries"),
    ("TRANSPORT", "Transport"),
    ("DINING", "Dining"),
    ("HEALTH", "Health"),
    ("INSURANCE", "Insurance"),
    ("ENTERTAINMENT", "Entertainment"),
    ("SUBSCRIPTIONS", "Subscriptions"),
    ("TRAVEL", "Travel"),
    ("OTHER", "Other"),
]

DEFAULT_SUBCATEGORIES = {
    "RENT": ["Mortgage", "Rent Payment", "Maintenance"],
    "UTILITIES": ["Electricity", "Water", "Internet", "Phone"],
    "GROCERIES": ["Supermarket", "Market"],
    "TRANSPORT": ["Fuel", "Public Transport", "Car Maintenance"],
    "HEALTH": ["Pharmacy", "Doctor"],
}

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("cognito_sub", String(255), unique=True, nullable=False),
    Column("email", String(255), nullable=False),
    Column("display_name", String(255)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

asset_categories = Table(
    "asset_categories",
    metadata,
    Column("code", String(50), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("has_market_cap_targets", Boolean, nullable=False, default=False),
    Column("sort_order", Integer, nullable=False, default=0),
)

income_categories = Table(
    "income_categories",
    metadata,
    Column("code", String(50), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("sort_order", Integer, nullable=False, default=0),
)

expense_categories = Table(
    "expense_categories",
    metadata,
    Column("code", String(50), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("sort_order", Integer, nullable=False, default=0),
)

expense_subcategories = Table(
    "expense_subcategories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(255), unique=True, nullable=False),
    Column(
        "parent_category_id",
        String(50),
        ForeignKey("expense_categories.code"),
        nullable=False,
    ),
    Column("name", String(255), nullable=False),
    Column("is_default", Boolean, nullable=False, default=False),
    Column("sort_order", Integer, nullable=False, default=0),
    Column("user_id", Integer, ForeignKey("users.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

assets = Table(
    "assets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("asset_name", String(255), nullable=False),
    Column("ticker", String(50)),
    Column("category_id", String(50), ForeignKey("asset_categories.code"), nullable=False),
    Column("market_cap", Numeric(20, 2)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "asset_name", name="uq_assets_user_name"),
)

asset_inputs = Table(
    "asset_inputs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("asset_id", Integer, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False),
    Column("year", Integer, nullable=False),
    Column("month", Integer, nullable=False),
    Column("total", Numeric(14, 2), nullable=False),
    Column("notes", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint(
        "user_id", "asset_id", "year", "month", name="uq_asset_inputs_user_asset_period"
    ),
)

incoming_items = Table(
    "incoming_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", String(50), ForeignKey("income_categories.code"), nullable=False),
    Column("year", Integer, nullable=False),
    Column("month", Integer, nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("description", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

expense_items = Table(
    "expense_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", String(50), ForeignKey("expense_categories.code"), nullable=False),
    Column("subcategory_id", Integer, ForeignKey("expense_subcategories.id")),
    Column("year", Integer, nullable=False),
    Column("month", Integer, nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("description", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", String(50), ForeignKey("expense_categories.code"), nullable=False),
    Column("year", Integer, nullable=False),
    Column("month", Integer, nullable=False),
    Column("budget_amount", Numeric(14, 2), nullable=False),
    Column("calculated", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint(
        "user_id", "category_id", "year", "month", name="uq_budgets_user_category_period"
    ),
)

category_allocation_targets = Table(
    "category_allocation_targets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", String(50), ForeignKey("asset_categories.code"), nullable=False),
    Column("target_pct", Numeric(12, 10), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "category_id", name="uq_allocation_targets_user_category"),
)


def create_db_engine(database_url: str) -> Engine:
    connect_args = {}
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)
    with engine.begin() as conn:
        seed_catalogs(conn)
    logger.info("Database initialised (%s)", engine.dialect.name)


def seed_catalogs(conn: Connection) -> None:
    """Insert reference catalogs that are missing. Safe to call repeatedly."""
    _insert_missing(
        conn,
        asset_categories,
        "code",
        [
            {
                "code": code,
                "name": name,
                "has_market_cap_targets": has_market_cap,
                "sort_order": index,
            }
            for index, (code, name, has_market_cap) in enumerate(ASSET_CATEGORIES)
        ],
    )
    _insert_missing(
        conn,
        income_categories,
        "code",
        [
            {"code": code, "name": name, "sort_order": index}
            for index, (code, name) in enumerate(INCOME_CATEGORIES)
        ],
    )
    _insert_missing(
        conn,
        expense_categories,
        "code",
        [
            {"code": code, "name": name, "sort_order": index}
            for index, (code, name) in enumerate(EXPENSE_CATEGORIES)
        ],
    )
    subcategory_rows = []
    for parent, names in DEFAULT_SUBCATEGORIES.items():
        for index, name in enumerate(names):
            subcategory_rows.append(
                {
                    "code": f"{parent}_{sanitize_code(name)}",
                    "parent_category_id": parent,
                    "name": name,
                    "is_default": True,
                    "sort_order": index,
                    "user_id": None,
                }
            )
    _insert_missing(conn, expense_subcategories, "code", subcategory_rows)


def _insert_missing(
    conn: Connection, table: Table, key: str, rows: list[dict]
) -> None:
    existing = set(conn.execute(select(table.c[key])).scalars().all())
    missing = [row for row in rows if row[key] not in existing]
    if missing:
        conn.execute(insert(table), missing)


def sanitize_code(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() else "_" for ch in value.strip().upper())
    while "__" in cleaned:
        cleaned = cleaned.replace("__", "_")
    return cleaned.strip("_")


def upsert(
    conn: Connection,
    table: Table,
    values: Mapping[str, object],
    index_elements: Iterable[str],
    update_values: Mapping[str, object],
):
    """Insert a row or overwrite ``update_values`` on the unique key.

    Runs as one ``INSERT ... ON CONFLICT DO UPDATE`` statement and returns the
    resulting row mapping.
    """
    dialect = conn.dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(table)
    elif dialect == "sqlite":
        stmt = sqlite_insert(table)
    else:
        raise RuntimeError(f"Upsert is not supported for dialect {dialect}.")

    stmt = stmt.values(**values).on_conflict_do_update(
        index_elements=list(index_elements),
        set_=dict(update_values),
    )
    return conn.execute(stmt.returning(*table.c)).mappings().one()
