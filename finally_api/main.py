import logging
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from finally_api import log_config
from finally_api.allocation_engine import AssetSnapshot, compute_allocation, previous_period
from finally_api.auth import TokenVerifier, build_token_verifier, resolve_user_id
from finally_api.budget_planner import (
    AUTO_ADJUST_LOOKBACK_MONTHS,
    CatalogCategory,
    StoredBudget,
    complete_budget_listing,
    sum_by_category,
    suggest_budgets,
)
from finally_api.config import Settings
from finally_api.db import (
    asset_categories,
    asset_inputs,
    assets,
    budgets,
    category_allocation_targets,
    create_db_engine,
    expense_categories,
    expense_items,
    expense_subcategories,
    income_categories,
    incoming_items,
    init_db,
    sanitize_code,
    upsert,
    users,
)
from finally_api.errors import (
    DATABASE_ERROR,
    HEALTH_CHECK_FAILED,
    INTERNAL_ERROR,
    ApiError,
    conflict,
    forbidden,
    from_integrity_error,
    not_found,
    route_not_found,
    unauthorized,
    validation_error,
)
from finally_api.networth import (
    HISTORY_MONTHS,
    PROJECTION_LOOKBACK_MONTHS,
    build_history,
    project_net_worth,
    shift_period,
    sum_by_period,
    trailing_periods,
)
from finally_api.percentages import AllocationShare
from finally_api.responses import (
    error_response,
    preflight_response,
    request_id_for,
    success_response,
)

logger = logging.getLogger(__name__)

router = APIRouter()

MIN_YEAR = 1900
MAX_YEAR = 2200
SUBCATEGORY_FIRST_SORT_ORDER = 100
# Paths served without a bearer token.
PUBLIC_PATHS = {"/health"}


def validate_period(year: int, month: int) -> None:
    if month < 1 or month > 12:
        raise ValueError("Month must be between 1 and 12.")
    if year < MIN_YEAR or year > MAX_YEAR:
        raise ValueError(f"Year must be between {MIN_YEAR} and {MAX_YEAR}.")


def require_period(year: int | None, month: int | None) -> tuple[int, int]:
    if year is None or month is None:
        raise validation_error("year and month are required")
    try:
        validate_period(year, month)
    except ValueError as exc:
        raise validation_error(str(exc)) from exc
    return year, month


def resolve_period(year: int | None, month: int | None) -> tuple[int, int]:
    today = date.today()
    return require_period(
        year if year is not None else today.year,
        month if month is not None else today.month,
    )


def period_filter(table, periods: list[tuple[int, int]]):
    return or_(
        *[and_(table.c.year == year, table.c.month == month) for year, month in periods]
    )


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


class UserUpdatePayload(BaseModel):
    display_name: str | None = None
    full_name: str | None = None

    @classmethod
    def validate_payload(cls, payload: "UserUpdatePayload") -> str:
        display_name = _clean_text(payload.display_name) or _clean_text(payload.full_name)
        if not display_name:
            raise ValueError("display_name is required.")
        return display_name


class UserResponse(BaseModel):
    id: int
    email: str
    display_name: str | None = None


class AssetPayload(BaseModel):
    name: str
    category_id: str
    ticker: str | None = None
    market_cap: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "AssetPayload") -> "AssetPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Asset name required.")
        payload.category_id = payload.category_id.strip().upper()
        if not payload.category_id:
            raise ValueError("category_id is required.")
        if payload.ticker is not None:
            payload.ticker = payload.ticker.strip().upper() or None
        if payload.market_cap is not None and payload.market_cap < 0:
            raise ValueError("Market cap cannot be negative.")
        return payload


class AssetUpdatePayload(BaseModel):
    name: str | None = None
    ticker: str | None = None
    market_cap: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "AssetUpdatePayload") -> dict:
        values = {}
        provided = payload.model_fields_set
        if "name" in provided:
            name = (payload.name or "").strip()
            if not name:
                raise ValueError("Asset name cannot be empty.")
            values["asset_name"] = name
        if "ticker" in provided:
            values["ticker"] = (payload.ticker or "").strip().upper() or None
        if "market_cap" in provided:
            if payload.market_cap is not None and payload.market_cap < 0:
                raise ValueError("Market cap cannot be negative.")
            values["market_cap"] = payload.market_cap
        return values


class AssetCategoryResponse(BaseModel):
    code: str
    category_name: str


class AssetResponse(BaseModel):
    id: int
    asset_name: str
    ticker: str | None = None
    category_id: str
    market_cap: Decimal | None = None
    category: AssetCategoryResponse


class AssetInputPayload(BaseModel):
    asset_id: int
    year: int
    month: int
    total: Decimal
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "AssetInputPayload") -> "AssetInputPayload":
        validate_period(payload.year, payload.month)
        payload.notes = _clean_text(payload.notes)
        return payload


class AssetSummaryResponse(BaseModel):
    id: int
    asset_name: str
    ticker: str | None = None
    category_id: str
    category_name: str


class AssetInputResponse(BaseModel):
    id: int
    asset_id: int
    year: int
    month: int
    total: Decimal
    notes: str | None = None
    asset: AssetSummaryResponse


class AllocationTargetPayload(BaseModel):
    target_pct: Decimal


class AllocationTargetResponse(BaseModel):
    category_id: str
    category_name: str
    target_pct: Decimal


class CashFlowPayload(BaseModel):
    category_id: str
    year: int
    month: int
    amount: Decimal
    description: str | None = None

    @classmethod
    def validate_payload(cls, payload):
        payload.category_id = payload.category_id.strip().upper()
        if not payload.category_id:
            raise ValueError("category_id is required.")
        validate_period(payload.year, payload.month)
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.description = _clean_text(payload.description)
        return payload


class ExpensePayload(CashFlowPayload):
    subcategory_id: int | None = None


class CashFlowUpdatePayload(BaseModel):
    category_id: str | None = None
    year: int | None = None
    month: int | None = None
    amount: Decimal | None = None
    description: str | None = None

    @classmethod
    def validate_payload(cls, payload) -> dict:
        values = {}
        for name in payload.model_fields_set:
            value = getattr(payload, name)
            if name == "description":
                values[name] = _clean_text(value)
            elif value is None:
                if name != "subcategory_id":
                    raise ValueError(f"{name} cannot be null.")
                values[name] = None
            elif name == "category_id":
                values[name] = value.strip().upper()
            elif name == "amount" and value <= 0:
                raise ValueError("Amount must be greater than zero.")
            else:
                values[name] = value
        return values


class ExpenseUpdatePayload(CashFlowUpdatePayload):
    subcategory_id: int | None = None


class CashFlowResponse(BaseModel):
    id: int
    category_id: str
    category_name: str
    year: int
    month: int
    amount: Decimal
    description: str | None = None
    created_at: datetime | None = None


class ExpenseResponse(CashFlowResponse):
    subcategory_id: int | None = None


class BudgetPayload(BaseModel):
    amount: Decimal
    year: int
    month: int

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        validate_period(payload.year, payload.month)
        if payload.amount < 0:
            raise ValueError("Budget amount cannot be negative.")
        return payload


class PeriodPayload(BaseModel):
    year: int
    month: int


class BudgetResponse(BaseModel):
    id: int
    category_id: str
    category_name: str
    year: int
    month: int
    budget_amount: Decimal
    calculated: bool


class SubcategoryPayload(BaseModel):
    parent_category_id: str
    name: str

    @classmethod
    def validate_payload(cls, payload: "SubcategoryPayload") -> "SubcategoryPayload":
        payload.parent_category_id = payload.parent_category_id.strip().upper()
        payload.name = payload.name.strip()
        if not payload.parent_category_id or not payload.name:
            raise ValueError("parent_category_id and name are required")
        return payload


class SubcategoryUpdatePayload(BaseModel):
    name: str

    @classmethod
    def validate_payload(cls, payload: "SubcategoryUpdatePayload") -> "SubcategoryUpdatePayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("name is required")
        return payload


class SubcategoryResponse(BaseModel):
    id: int
    code: str
    parent_category_id: str
    name: str
    is_default: bool
    sort_order: int
    user_id: int | None = None


class CatalogResponse(BaseModel):
    code: str
    name: str
    sort_order: int


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def get_current_user(
    request: Request,
    authorization: str | None = Header(None),
) -> int:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        verifier: TokenVerifier = request.app.state.token_verifier
        identity = verifier.verify(authorization)
    if identity is None:
        raise unauthorized()
    with request.app.state.engine.begin() as conn:
        return resolve_user_id(conn, identity)


def asset_category_exists(conn: Connection, code: str) -> bool:
    return bool(
        conn.execute(
            select(asset_categories.c.code).where(asset_categories.c.code == code)
        ).first()
    )


def asset_name_taken(
    conn: Connection, user_id: int, name: str, exclude_id: int | None = None
) -> bool:
    stmt = select(assets.c.id).where(assets.c.user_id == user_id, assets.c.asset_name == name)
    if exclude_id is not None:
        stmt = stmt.where(assets.c.id != exclude_id)
    return conn.execute(stmt).first() is not None


def fetch_asset(conn: Connection, user_id: int, asset_id: int) -> AssetResponse | None:
    row = conn.execute(
        select(assets, asset_categories.c.name.label("category_name"))
        .select_from(
            assets.join(asset_categories, assets.c.category_id == asset_categories.c.code)
        )
        .where(assets.c.id == asset_id, assets.c.user_id == user_id)
    ).mappings().first()
    if not row:
        return None
    return asset_response(row)


def asset_response(row) -> AssetResponse:
    return AssetResponse(
        id=row["id"],
        asset_name=row["asset_name"],
        ticker=row["ticker"],
        category_id=row["category_id"],
        market_cap=row["market_cap"],
        category=AssetCategoryResponse(
            code=row["category_id"], category_name=row["category_name"]
        ),
    )


def asset_input_query():
    return select(
        asset_inputs,
        assets.c.asset_name,
        assets.c.ticker,
        assets.c.category_id,
        asset_categories.c.name.label("category_name"),
    ).select_from(
        asset_inputs.join(assets, asset_inputs.c.asset_id == assets.c.id).join(
            asset_categories, assets.c.category_id == asset_categories.c.code
        )
    )


def asset_input_response(row) -> AssetInputResponse:
    return AssetInputResponse(
        id=row["id"],
        asset_id=row["asset_id"],
        year=row["year"],
        month=row["month"],
        total=row["total"],
        notes=row["notes"],
        asset=AssetSummaryResponse(
            id=row["asset_id"],
            asset_name=row["asset_name"],
            ticker=row["ticker"],
            category_id=row["category_id"],
            category_name=row["category_name"],
        ),
    )


def fetch_snapshots(
    conn: Connection, user_id: int, year: int, month: int
) -> list[AssetSnapshot]:
    rows = conn.execute(
        select(
            asset_inputs.c.asset_id,
            asset_inputs.c.total,
            assets.c.asset_name,
            assets.c.ticker,
            assets.c.market_cap,
            assets.c.category_id,
            asset_categories.c.name.label("category_name"),
            asset_categories.c.has_market_cap_targets,
        )
        .select_from(
            asset_inputs.join(assets, asset_inputs.c.asset_id == assets.c.id).join(
                asset_categories, assets.c.category_id == asset_categories.c.code
            )
        )
        .where(
            asset_inputs.c.user_id == user_id,
            asset_inputs.c.year == year,
            asset_inputs.c.month == month,
        )
        .order_by(assets.c.category_id.asc(), assets.c.asset_name.asc())
    ).mappings().all()
    return [
        AssetSnapshot(
            asset_id=row["asset_id"],
            asset_name=row["asset_name"],
            category=row["category_id"],
            category_name=row["category_name"],
            total=row["total"],
            ticker=row["ticker"],
            market_cap=row["market_cap"],
            has_market_cap_targets=bool(row["has_market_cap_targets"]),
        )
        for row in rows
    ]


def fetch_allocation_targets(conn: Connection, user_id: int) -> dict[str, AllocationShare]:
    rows = conn.execute(
        select(
            category_allocation_targets.c.category_id,
            category_allocation_targets.c.target_pct,
        ).where(category_allocation_targets.c.user_id == user_id)
    ).all()
    return {row[0]: AllocationShare.from_fraction(row[1]) for row in rows}


def allocation_target_response(row) -> AllocationTargetResponse:
    return AllocationTargetResponse(
        category_id=row["category_id"],
        category_name=row["category_name"],
        target_pct=AllocationShare.from_fraction(row["target_pct"]).as_percent(),
    )


def cash_flow_query(table, category_table):
    return select(table, category_table.c.name.label("category_name")).select_from(
        table.join(category_table, table.c.category_id == category_table.c.code)
    )


def cash_flow_response(row) -> CashFlowResponse:
    return CashFlowResponse(
        id=row["id"],
        category_id=row["category_id"],
        category_name=row["category_name"],
        year=row["year"],
        month=row["month"],
        amount=row["amount"],
        description=row["description"],
        created_at=row["created_at"],
    )


def expense_response(row) -> ExpenseResponse:
    return ExpenseResponse(
        id=row["id"],
        category_id=row["category_id"],
        category_name=row["category_name"],
        subcategory_id=row["subcategory_id"],
        year=row["year"],
        month=row["month"],
        amount=row["amount"],
        description=row["description"],
        created_at=row["created_at"],
    )


def catalog_code_exists(conn: Connection, table, code: str) -> bool:
    return bool(conn.execute(select(table.c.code).where(table.c.code == code)).first())


def check_subcategory(
    conn: Connection, user_id: int, subcategory_id: int, category_id: str
) -> None:
    row = conn.execute(
        select(expense_subcategories.c.parent_category_id).where(
            expense_subcategories.c.id == subcategory_id,
            or_(
                expense_subcategories.c.user_id.is_(None),
                expense_subcategories.c.user_id == user_id,
            ),
        )
    ).first()
    if not row:
        raise validation_error("Unknown subcategory.")
    if row[0] != category_id:
        raise validation_error("Subcategory does not belong to the expense category.")


def budget_response(row) -> BudgetResponse:
    return BudgetResponse(
        id=row["id"],
        category_id=row["category_id"],
        category_name=row["category_name"],
        year=row["year"],
        month=row["month"],
        budget_amount=row["budget_amount"],
        calculated=bool(row["calculated"]),
    )


def fetch_budget_listing(conn: Connection, user_id: int, year: int, month: int):
    catalog = [
        CatalogCategory(code=row["code"], name=row["name"])
        for row in conn.execute(
            select(expense_categories.c.code, expense_categories.c.name).order_by(
                expense_categories.c.sort_order.asc(), expense_categories.c.code.asc()
            )
        ).mappings()
    ]
    stored = {
        row["category_id"]: StoredBudget(
            amount=row["budget_amount"], calculated=bool(row["calculated"])
        )
        for row in conn.execute(
            select(budgets).where(
                budgets.c.user_id == user_id,
                budgets.c.year == year,
                budgets.c.month == month,
            )
        ).mappings()
    }
    actuals = sum_by_category(
        conn.execute(
            select(expense_items.c.category_id, expense_items.c.amount).where(
                expense_items.c.user_id == user_id,
                expense_items.c.year == year,
                expense_items.c.month == month,
            )
        ).all()
    )
    return complete_budget_listing(catalog, stored, actuals)


def subcategory_response(row) -> SubcategoryResponse:
    return SubcategoryResponse(
        id=row["id"],
        code=row["code"],
        parent_category_id=row["parent_category_id"],
        name=row["name"],
        is_default=bool(row["is_default"]),
        sort_order=row["sort_order"],
        user_id=row["user_id"],
    )


def find_visible_subcategory(
    conn: Connection, user_id: int, subcategory_id: int, lock: bool = False
):
    stmt = select(expense_subcategories).where(
        expense_subcategories.c.id == subcategory_id,
        or_(
            expense_subcategories.c.user_id.is_(None),
            expense_subcategories.c.user_id == user_id,
        ),
    )
    if lock:
        stmt = stmt.with_for_update()
    return conn.execute(stmt).mappings().first()


@router.get("/health")
def health(request: Request):
    settings: Settings = request.app.state.settings
    engine = get_engine(request)
    try:
        with engine.connect() as conn:
            counts = {
                name: conn.execute(select(func.count()).select_from(table)).scalar_one()
                for name, table in (
                    ("users", users),
                    ("assets", assets),
                    ("asset_inputs", asset_inputs),
                )
            }
    except SQLAlchemyError as exc:
        logger.exception("Health check failed")
        raise ApiError(HEALTH_CHECK_FAILED, "Database unavailable", 503) from exc
    return success_response(
        request,
        {
            "status": "healthy",
            "service": settings.service_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": "connected",
            "counts": counts,
        },
    )


@router.get("/users/me")
def get_me(request: Request, user_id: int = Depends(get_current_user)):
    with get_engine(request).begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise not_found("User not found")
    return success_response(
        request,
        UserResponse(id=row["id"], email=row["email"], display_name=row["display_name"]),
    )


@router.patch("/users/me")
def update_me(
    payload: UserUpdatePayload,
    request: Request,
    user_id: int = Depends(get_current_user),
):
    try:
        display_name = UserUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise validation_error(str(exc)) from exc

    with get_engine(request).begin() as conn:
        row = conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(display_name=display_name)
            .returning(users.c.id, users.c.email, users.c.display_name)
        ).mappings().first()
    if not row:
        raise not_found("User not found")
    return success_response(
        request,
        UserResponse(id=row["id"], email=row["email"], display_name=row["display_name"]),
    )


@router.get("/export/data")
def export_data(request: Request, user_id: int = Depends(get_current_user)):
    owned_tables = (
        ("assets", assets),
        ("asset_inputs", asset_inputs),
        ("incomings", incoming_items),
        ("expenses", expense_items),
        ("budgets", budgets),
        ("category_allocation_targets", category_allocation_targets),
        ("subcategories", expense_subcategories),
    )
    export = {"exported_at": datetime.now(timezone.utc).isoformat()}
    with get_engine(request).begin() as conn:
        for name, table in owned_tables:
            rows = conn.execute(
                select(table).where(table.c.user_id == user_id).order_by(table.c.id.asc())
            ).mappings().all()
            export[name] = [dict(row) for row in rows]

    for target in export["category_allocation_targets"]:
        target["target_pct"] = AllocationShare.from_fraction(target["target_pct"]).as_percent()

    filename = f"finally-export-{int(time.time() * 1000)}.json"
    return success_response(
        request,
        export,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/asset-categories")
def list_asset_categories(request: Request, user_id: int = Depends(get_current_user)):
    with get_engine(request).begin() as conn:
        rows = conn.execute(
            select(asset_categories).order_by(asset_categories.c.sort_order.asc())
        ).mappings().all()
    return success_response(
        request,
        [
            {
                "code": row["code"],
                "name": row["name"],
                "sort_order": row["sort_order"],
                "has_market_cap_targets": bool(row["has_market_cap_targets"]),
            }
            for row in rows
        ],
    )


@router.get("/income-categories")
def list_income_categories(request: Request, user_id: int = Depends(get_current_user)):
    with get_engine(request).begin() as conn:
        rows = conn.execute(
            select(income_categories).order_by(income_categories.c.sort_order.asc())
        ).mappings().all()
    return success_response(
        request,
        [
            CatalogResponse(code=row["code"], name=row["name"], sort_order=row["sort_order"])
            for row in rows
        ],
    )


@router.get("/expense-categories")
def list_expense_categories(request: Request, user_id: int = Depends(get_current_user)):
    with get_engine(request).begin() as conn:
        rows = conn.execute(
            select(expense_categories).order_by(expense_categories.c.sort_order.asc())
        ).mappings().all()
    return success_response(
        request,
        [
            CatalogResponse(code=row["code"], name=row["name"], sort_order=row["sort_order"])
            for row in rows
        ],
    )


@router.get("/assets")
def list_assets(request: Request, user_id: int = Depends(get_current_user)):
    with get_engine(request).begin() as conn:
        rows = conn.execute(
            select(assets, asset_categories.c.name.label("category_name"))
            .select_from(
                assets.join(asset_categories, assets.c.category_id == asset_categories.c.code)
            )
            .where(assets.c.user_id == user_id)
            .order_by(assets.c.category_id.asc(), assets.c.asset_name.asc())
        ).mappings().all()
    logger.debug("Found %d assets for user %s", len(rows), user_id)
    return success_response(request, [asset_response(row) for row in rows])


@router.post("/assets")
def create_asset(
    payload: AssetPayload,
    request: Request,
    user_id: int = Depends(get_current_user),
):
    try:
        payload = AssetPayload.validate_payload(payload)
    except ValueError as exc:
        raise validation_error(str(exc)) from exc

    with get_engine(request).begin() as conn:
        if not asset_category_exists(conn, payload.category_id):
            raise validation_error(f"Unknown asset category: {payload.category_id}")
        if asset_name_taken(conn, user_id, payload.name):
            raise conflict("An asset with this name already exists")
        asset_id = conn.execute(
            insert(assets)
            .values(
                user_id=user_id,
                asset_name=payload.name,
                ticker=payload.ticker,
                category_id=payload.category_id,
                market_cap=payload.market_cap,
            )
            .returning(assets.c.id)
        ).scalar_one()
        asset = fetch_asset(conn, user_id, asset_id)

    return success_response(request, asset, status_code=201)


@router.delete("/assets/all")
def delete_all_assets(request: Request, user_id: int = Depends(get_current_user)):
    with get_engine(request).begin() as conn:
        conn.execute(delete(asset_inputs).where(asset_inputs.c.user_id == user_id))
        result = conn.execute(delete(assets).where(assets.c.user_id == user_id))
    logger.info("Deleted %d assets for user %s", result.rowcount, user_id)
    return success_response(request, {"deleted": result.rowcount})


@router.patch("/assets/{asset_id}")
def update_asset(
    asset_id: int,
    payload: AssetUpdatePayload,
    request: Request,
    user_id: int = Depends(get_current_user),
):
    try:
        values = AssetUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise validation_error(str(exc)) from exc

    with get_engine(request).begin() as conn:
        if fetch_asset(conn, user_id, asset_id) is None:
            raise not_found("Asset not found")
        if "asset_name" in values and asset_name_taken(
            conn, user_id, values["asset_name"], exclude_id=asset_id
        ):
            raise conflict("An asset with this name already exists")
        if values:
            conn.execute(
                update(assets)
                .where(assets.c.id == asset_id, assets.c.user_id == user_id)
                .values(**values)
            )
        asset = fetch_asset(conn, user_id, asset_id)

    return success_response(request, asset)


@router.delete("/assets/{asset_id}")
def delete_asset(asset_id: int, request: Request, user_id: int = Depends(get_current_user)):
    with get_engine(request).begin() as conn:
        owned = conn.execute(
            select(assets.c.id).where(assets.c.id == asset_id, assets.c.user_id == user_id)
        ).first()
        if not owned:
            raise not_found("Asset not found")
        conn.execute(
            delete(asset_inputs).where(
                asset_inputs.c.asset_id == asset_id, asset_inputs.c.user_id == user_id
            )
        )
        conn.execute(delete(assets).where(assets.c.id == asset_id, assets.c.user_id == user_id))
    return success_response(request, None, status_code=204)


@router.get("/asset-inputs")
def list_asset_inputs(
    request: Request,
    year: int | None = Query(None),
    month: int | None = Query(None),
    user_id: int = Depends(get_current_user),
):
    year, month = require_period(year, month)
    with get_engine(request).begin() as conn:
        rows = conn.execute(
            asset_input_query()
            .where(
                asset_inputs.c.user_id == user_id,
                asset_inputs.c.year == year,
                asset_inputs.c.month == month,
            )
            .order_by(assets.c.category_id.asc(), assets.c.asset_name.asc())
        ).mappings().all()
    return success_response(request, [asset_input_response(row) for row in rows])


@router.post("/asset-inputs")
def save_asset_input(
    payload: AssetInputPayload,
    request: Request,
    user_id: int = Depends(get_current_user),
):
    try:
        payload = AssetInputPayload.validate_payload(payload)
    except ValueError as exc:
        raise validation_error(str(exc)) from exc

    with get_engine(request).begin() as conn:
        owned = conn.execute(
            select(assets.c.id).where(assets.c.id == payload.asset_id, assets.c.user_id == user_id)
        ).first()
        if not owned:
            raise not_found("Asset not found")
        saved = upsert(
            conn,
            asset_inputs,
            values={
                "user_id": user_id,
                "asset_id": payload.asset_id,
                "year": payload.year,
                "month": payload.month,
                "total": payload.total,
                "notes": payload.notes,
            },
            index_elements=["user_id", "asset_id", "year", "month"],
            update_values={
                "total": payload.total,
                "notes": payload.notes,
                "updated_at": func.now(),
            },
        )
        row = conn.execute(
            asset_input_query().where(asset_inputs.c.id == saved["id"])
        ).mappings().one()
    return success_response(request, asset_input_response(row))


@router.get("/allocation")
def get_allocation(
    request: Request,
    year: int | None = Query(None),
    month: int | None = Query(None),
    user_id: int = Depends(get_current_user),
):
    year, month = resolve_period(year, month)
    prev_year, prev_month = previous_period(year, month)
    with get_engine(request).begin() as conn:
        current = fetch_snapshots(conn, user_id, year, month)
        previous = fetch_snapshots(conn, user_id, prev_year, prev_month)
        targets = fetch_allocation_targets(conn, user_id)
    summary = compute_allocation(current, previous, targets)
    return success_response(request, summary)


@router.get("/category-allocation-targets")
def list_allocation_targets(request: Request, user_id: int = Depends(get_current_user)):
    with get_engine(request).begin() as conn:
        rows = conn.execute(
            select(
                category_allocation_targets.c.category_id,
                category_allocation_targets.c.target_pct,
                asset_categories.c.name.label("category_name"),
            )
            .select_from(
                category_allocation_targets.join(
                    asset_categories,
                    category_allocation_targets.c.category_id == asset_categories.c.code,
                )
            )
            .where(category_allocation_targets.c.user_id == user_id)
            .order_by(asset_categories.c.sort_order.asc())
        ).mappings().all()
    return success_response(request, [allocation_target_response(row) for row in rows])


@router.patch("/category-allocation-targets/{category}")
def save_allocation_target(
    category: str,
    payload: AllocationTargetPayload,
    request: Request,
    user_id: int = Depends(get_current_user),
):
    try:
        share = AllocationShare.from_percent(payload.target_pct)
    except ValueError as exc:
        raise validation_error(str(exc)) from exc

    category = category.strip().upper()
    with get_engine(request).begin() as conn:
        category_name = conn.execute(
            select(asset_categories.c.name).where(asset_categories.c.code == category)
        ).scalar_one_or_none()
        if category_name is None:
            raise not_found("Category not found")
        saved = upsert(
            conn,
            category_allocation_targets,
            values={"user_id": user_id, "category_id": category, "target_pct": share.fraction},
            index_elements=["user_id", "category_id"],
            update_values={"target_pct": share.fraction},
        )
    return success_response(
        request,
        allocation_target_response(
            {
                "category_id": saved["category_id"],
                "category_name": category_name,
                "target_pct": saved["target_pct"],
            }
        ),
    )


@router.get("/budgets")
def list_budgets(
    request: Request,
    year: int | None = Query(None),
    month: int | None = Query(None),
    user_id: int = Depends(get_current_user),
):
    year, month = require_period(year, month)
    with get_engine(request).begin() as conn:
        listing = fetch_budget_listing(conn, user_id, year, month)
    return success_response(request, listing)


@router.post("/budgets/auto-adjust")
def auto_adjust_budgets(
    payload: PeriodPayload,
    request: Request,
    user_id: int = Depends(get_current_user),
):
    year, month = require_period(payload.year, payload.month)
    lookback = [
        shift_period(year, month, -offset)
        for offset in range(AUTO_ADJUST_LOOKBACK_MONTHS, 0, -1)
    ]
    with get_engine(request).begin() as conn:
        user_set = set(
            conn.execute(
                select(budgets.c.category_id).where(
                    budgets.c.user_id == user_id,
                    budgets.c.year == year,
                    budgets.c.month == month,
                    budgets.c.calculated.is_(False),
                )
            ).scalars()
        )
        spend_rows = conn.execute(
            select(
                expense_items.c.category_id,
                expense_items.c.year,
                expense_items.c.month,
                func.sum(expense_items.c.amount).label("total"),
            )
            .where(expense_items.c.user_id == user_id, period_filter(expense_items, lookback))
            .group_by(expense_items.c.category_id, expense_items.c.year, expense_items.c.month)
        ).mappings().all()
        monthly_spend: dict[str, dict[tuple[int, int], Decimal]] = {}
        for row in spend_rows:
            monthly_spend.setdefault(row["category_id"], {})[(row["year"], row["month"])] = Decimal(
                str(row["total"])
            )

        suggestions = suggest_budgets(monthly_spend, user_set)
        for category_id, amount in suggestions.items():
            upsert(
                conn,
                budgets,
                values={
                    "user_id": user_id,
                    "category_id": category_id,
                    "year": year,
                    "month": month,
                    "budget_amount": amount,
                    "calculated": True,
                },
                index_elements=["user_id", "category_id", "year", "month"],
                update_values={"budget_amount": amount, "calculated": True},
            )
        listing = fetch_budget_listing(conn, user_id, year, month)
    logger.info("Auto-adjusted %d budgets for user %s", len(suggestions), user_id)
    return success_response(request, listing)


@router.patch("/budgets/{category}")
def save_budget(
    category: str,
    payload: BudgetPayload,
    request: Request,
    user_id: int = Depends(get_current_user),
):
    try:
        payload = BudgetPayload.validate_payload(payload)
    except ValueError as exc:
        raise validation_error(str(exc)) from exc

    category = category.strip().upper()
    with get_engine(request).begin() as conn:
        category_name = conn.execute(
            select(expense_categories.c.name).where(expense_categories.c.code == category)
        ).scalar_one_or_none()
        if category_name is None:
            raise not_found("Category not found")
        saved = upsert(
            conn,
            budgets,
            values={
                "user_id": user_id,
                "category_id": category,
                "year": payload.year,
                "month": payload.month,
                "budget_amount": payload.amount,
                "calculated": False,
            },
            index_elements=["user_id", "category_id", "year", "month"],
            update_values={"budget_amount": payload.amount, "calculated": False},
        )
    return success_response(request, budget_response({**saved, "category_name": category_name}))


@router.get("/incomings")
def list_incomings(
    request: Request,
    year: int | None = Query(None),
    month: int | None = Query(None),
    user_id: int = Depends(get_current_user),
):
    year, month = require_period(year, month)
    with get_engine(request).begin() as conn:
        rows = conn.execute(
            cash_flow_query(incoming_items, income_categories)
            .where(
                incoming_items.c.user_id == user_id,
                incoming_items.c.year == year,
                incoming_items.c.month == month,
            )
            .order_by(incoming_items.c.created_at.asc(), incoming_items.c.id.asc())
        ).mappings().all()
    return success_response(request, [cash_flow_response(row) for row in rows])


@router.post("/incomings")
def create_incoming(
    payload: CashFlowPayload,
    request: Request,
    user_id: int = Depends(get_current_user),
):
    try:
        payload = CashFlowPayload.validate_payload(payload)
    except ValueError as exc:
        raise validation_error(str(exc)) from exc

    with get_engine(request).begin() as conn:
        if not catalog_code_exists(conn, income_categories, payload.category_id):
            raise validation_error(f"Unknown income category: {payload.category_id}")
        incoming_id = conn.execute(
            insert(incoming_items)
            .values(
                user_id=user_id,
                category_id=payload.category_id,
                year=payload.year,
                month=payload.month,
                amount=payload.amount,
                description=payload.description,
            )
            .returning(incoming_items.c.id)
        ).scalar_one()
        row = conn.execute(
            cash_flow_query(incoming_items, income_categories).where(
                incoming_items.c.id == incoming_id
            )
        ).mappings().one()
    return success_response(request, cash_flow_response(row), status_code=201)


@router.patch("/incomings/{incoming_id}")
def update_incoming(
    incoming_id: int,
    payload: CashFlowUpdatePayload,
    request: Request,
    user_id: int = Depends(get_current_user),
):
    try:
        values = CashFlowUpdatePayload.validate_payload(payload)
        if "year" in values or "month" in values:
            validate_period(values.get("year", MIN_YEAR), values.get("month", 1))
    except ValueError as exc:
        raise validation_error(str(exc)) from exc

    with get_engine(request).begin() as conn:
        existing = conn.execute(
            select(incoming_items).where(
                incoming_items.c.id == incoming_id, incoming_items.c.user_id == user_id
            )
        ).mappings().first()
        if not existing:
            raise not_found("Income entry not found")
        if "category_id" in values and not catalog_code_exists(
            conn, income_categories, values["category_id"]
        ):
            raise validation_error(f"Unknown income category: {values['category_id']}")
        if values:
            conn.execute(
                update(incoming_items)
                .where(incoming_items.c.id == incoming_id, incoming_items.c.user_id == user_id)
                .values(**values)
            )
        row = conn.execute(
            cash_flow_query(incoming_items, income_categories).where(
                incoming_items.c.id == incoming_id
            )
        ).mappings().one()
    return success_response(request, cash_flow_response(row))


@router.delete("/incomings/{incoming_id}")
def delete_incoming(
    incoming_id: int, request: Request, user_id: int = Depends(get_current_user)
):
    with get_engine(request).begin() as conn:
        result = conn.execute(
            delete(incoming_items).where(
                incoming_items.c.id == incoming_id, incoming_items.c.user_id == user_id
            )
        )
        if result.rowcount == 0:
            raise not_found("Income entry not found")
    return success_response(request, None, status_code=204)


@router.get("/expenses")
def list_expenses(
    request: Request,
    year: int | None = Query(None),
    month: int | None = Query(None),
    user_id: int = Depends(get_current_user),
):
    year, month = require_period(year, month)
    with get_engine(request).begin() as conn:
        rows = conn.execute(
            cash_flow_query(expense_items, expense_categories)
            .where(
                expense_items.c.user_id == user_id,
                expense_items.c.year == year,
                expense_items.c.month == month,
            )
            .order_by(expense_items.c.created_at.asc(), expense_items.c.id.asc())
        ).mappings().all()
    return success_response(request, [expense_response(row) for row in rows])


@router.post("/expenses")
def create_expense(
    payload: ExpensePayload,
    request: Request,
    user_id: int = Depends(get_current_user),
):
    try:
        payload = ExpensePayload.validate_payload(payload)
    except ValueError as exc:
        raise validation_error(str(exc)) from exc

    with get_engine(request).begin() as conn:
        if not catalog_code_exists(conn, expense_categories, payload.category_id):
            raise validation_error(f"Unknown expense category: {payload.category_id}")
        if payload.subcategory_id is not None:
            check_subcategory(conn, user_id, payload.subcategory_id, payload.category_id)
        expense_id = conn.execute(
            insert(expense_items)
            .values(
                user_id=user_id,
                category_id=payload.category_id,
                subcategory_id=payload.subcategory_id,
                year=payload.year,
                month=payload.month,
                amount=payload.amount,
                description=payload.description,
            )
            .returning(expense_items.c.id)
        ).scalar_one()
        row = conn.execute(
            cash_flow_query(expense_items, expense_categories).where(
                expense_items.c.id == expense_id
            )
        ).mappings().one()
    return success_response(request, expense_response(row), status_code=201)


@router.patch("/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    payload: ExpenseUpdatePayload,
    request: Request,
    user_id: int = Depends(get_current_user),
):
    try:
        values = ExpenseUpdatePayload.validate_payload(payload)
        if "year" in values or "month" in values:
            validate_period(values.get("year", MIN_YEAR), values.get("month", 1))
    except ValueError as exc:
        raise validation_error(str(exc)) from exc

    with get_engine(request).begin() as conn:
        existing = conn.execute(
            select(expense_items).where(
                expense_items.c.id == expense_id, expense_items.c.user_id == user_id
            )
        ).mappings().first()
        if not existing:
            raise not_found("Expense entry not found")
        category_id = values.get("category_id", existing["category_id"])
        if "category_id" in values and not catalog_code_exists(
            conn, expense_categories, category_id
        ):
            raise validation_error(f"Unknown expense category: {category_id}")
        subcategory_id = values.get("subcategory_id", existing["subcategory_id"])
        if subcategory_id is not None:
            check_subcategory(conn, user_id, subcategory_id, category_id)
        if values:
            conn.execute(
                update(expense_items)
                .where(expense_items.c.id == expense_id, expense_items.c.user_id == user_id)
                .values(**values)
            )
        row = conn.execute(
            cash_flow_query(expense_items, expense_categories).where(
                expense_items.c.id == expense_id
            )
        ).mappings().one()
    return success_response(request, expense_response(row))


@router.delete("/expenses/{expense_id}")
def delete_expense(expense_id: int, request: Request, user_id: int = Depends(get_current_user)):
    with get_engine(request).begin() as conn:
        result = conn.execute(
            delete(expense_items).where(
                expense_items.c.id == expense_id, expense_items.c.user_id == user_id
            )
        )
        if result.rowcount == 0:
            raise not_found("Expense entry not found")
    return success_response(request, None, status_code=204)


@router.get("/subcategories")
def list_subcategories(
    request: Request,
    category_id: str | None = Query(None),
    user_id: int = Depends(get_current_user),
):
    if not category_id or not category_id.strip():
        raise validation_error("category_id is required")
    with get_engine(request).begin() as conn:
        rows = conn.execute(
            select(expense_subcategories)
            .where(
                expense_subcategories.c.parent_category_id == category_id.strip().upper(),
                or_(
                    expense_subcategories.c.user_id.is_(None),
                    expense_subcategories.c.user_id == user_id,
                ),
            )
            .order_by(expense_subcategories.c.sort_order.asc(), expense_subcategories.c.id.asc())
        ).mappings().all()
    return success_response(request, [subcategory_response(row) for row in rows])


@router.post("/subcategories")
def create_subcategory(
    payload: SubcategoryPayload,
    request: Request,
    user_id: int = Depends(get_current_user),
):
    try:
        payload = SubcategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise validation_error(str(exc)) from exc

    with get_engine(request).begin() as conn:
        if not catalog_code_exists(conn, expense_categories, payload.parent_category_id):
            raise not_found("Parent category not found")
        max_sort_order = conn.execute(
            select(func.max(expense_subcategories.c.sort_order)).where(
                expense_subcategories.c.parent_category_id == payload.parent_category_id,
                expense_subcategories.c.user_id == user_id,
            )
        ).scalar_one_or_none()
        next_sort_order = (
            max_sort_order + 1 if max_sort_order is not None else SUBCATEGORY_FIRST_SORT_ORDER
        )
        code = (
            f"{payload.parent_category_id}_{sanitize_code(payload.name)}_"
            f"{int(time.time() * 1000)}"
        )
        row = conn.execute(
            insert(expense_subcategories)
            .values(
                code=code,
                parent_category_id=payload.parent_category_id,
                name=payload.name,
                is_default=False,
                sort_order=next_sort_order,
                user_id=user_id,
            )
            .returning(*expense_subcategories.c)
        ).mappings().one()
    return success_response(request, subcategory_response(row), status_code=201)


@router.patch("/subcategories/{subcategory_id}")
def update_subcategory(
    subcategory_id: int,
    payload: SubcategoryUpdatePayload,
    request: Request,
    user_id: int = Depends(get_current_user),
):
    try:
        payload = SubcategoryUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise validation_error(str(exc)) from exc

    with get_engine(request).begin() as conn:
        existing = find_visible_subcategory(conn, user_id, subcategory_id)
        if not existing:
            raise not_found("Subcategory not found")
        if existing["is_default"] or existing["user_id"] is None:
            raise forbidden("Cannot edit default subcategories")
        row = conn.execute(
            update(expense_subcategories)
            .where(
                expense_subcategories.c.id == subcategory_id,
                expense_subcategories.c.user_id == user_id,
            )
            .values(name=payload.name)
            .returning(*expense_subcategories.c)
        ).mappings().one()
    return success_response(request, subcategory_response(row))


@router.delete("/subcategories/{subcategory_id}")
def delete_subcategory(
    subcategory_id: int, request: Request, user_id: int = Depends(get_current_user)
):
    with get_engine(request).begin() as conn:
        existing = find_visible_subcategory(conn, user_id, subcategory_id, lock=True)
        if not existing:
            raise not_found("Subcategory not found")
        if existing["is_default"] or existing["user_id"] is None:
            raise forbidden("Cannot delete default subcategories")
        usage = conn.execute(
            select(func.count())
            .select_from(expense_items)
            .where(expense_items.c.subcategory_id == subcategory_id)
        ).scalar_one()
        if usage > 0:
            raise conflict(
                f"Cannot delete subcategory: it is used by {usage} expense(s)",
                details={"expense_count": usage},
            )
        conn.execute(
            delete(expense_subcategories).where(
                expense_subcategories.c.id == subcategory_id,
                expense_subcategories.c.user_id == user_id,
            )
        )
    return success_response(request, {"message": "Subcategory deleted successfully"})


@router.get("/networth/history")
def networth_history(
    request: Request,
    year: int | None = Query(None),
    month: int | None = Query(None),
    user_id: int = Depends(get_current_user),
):
    year, month = resolve_period(year, month)
    periods = trailing_periods(year, month, HISTORY_MONTHS)
    with get_engine(request).begin() as conn:
        rows = conn.execute(
            select(asset_inputs.c.year, asset_inputs.c.month, asset_inputs.c.total).where(
                asset_inputs.c.user_id == user_id, period_filter(asset_inputs, periods)
            )
        ).all()
    return success_response(request, build_history(sum_by_period(rows)))


@router.get("/networth/projection")
def networth_projection(
    request: Request,
    year: int | None = Query(None),
    month: int | None = Query(None),
    user_id: int = Depends(get_current_user),
):
    year, month = resolve_period(year, month)
    periods = trailing_periods(year, month, PROJECTION_LOOKBACK_MONTHS)
    with get_engine(request).begin() as conn:
        rows = conn.execute(
            select(asset_inputs.c.year, asset_inputs.c.month, asset_inputs.c.total).where(
                asset_inputs.c.user_id == user_id, period_filter(asset_inputs, periods)
            )
        ).all()
    return success_response(request, project_net_worth(sum_by_period(rows), year, month))


async def api_error_handler(request: Request, exc: ApiError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(request, exc.code, exc.message, exc.status_code, exc.details)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code in (404, 405):
        logger.info("Route not found: %s %s", request.method, request.url.path)
        error = route_not_found()
        return error_response(request, error.code, error.message, error.status_code)
    code = INTERNAL_ERROR if exc.status_code >= 500 else "HTTP_ERROR"
    return error_response(request, code, str(exc.detail), exc.status_code)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    error = validation_error("Invalid request", details)
    return error_response(request, error.code, error.message, error.status_code, error.details)


async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning("Constraint violation on %s %s: %s", request.method, request.url.path, exc.orig)
    error = from_integrity_error(exc)
    return error_response(request, error.code, error.message, error.status_code)


async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return error_response(request, DATABASE_ERROR, "Database operation failed", 500)


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    token_verifier: TokenVerifier | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    log_config.setup(settings.log_level)
    engine = engine or create_db_engine(settings.database_url)
    token_verifier = token_verifier or build_token_verifier(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(app.state.engine)
        yield
        app.state.engine.dispose()

    app = FastAPI(title=settings.service_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.token_verifier = token_verifier

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)

    @app.middleware("http")
    async def envelope_middleware(request: Request, call_next):
        request_id_for(request)
        if request.method == "OPTIONS":
            return preflight_response(request)
        if request.url.path not in PUBLIC_PATHS:
            identity = await run_in_threadpool(
                app.state.token_verifier.verify, request.headers.get("authorization")
            )
            if identity is None:
                logger.info("Rejected unauthenticated %s %s", request.method, request.url.path)
                return await api_error_handler(request, unauthorized())
            request.state.identity = identity
        try:
            return await call_next(request)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return error_response(request, INTERNAL_ERROR, "An unexpected error occurred", 500)

    app.include_router(router)
    return app
