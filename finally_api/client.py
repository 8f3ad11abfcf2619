from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10

# Cached resources each kind of mutation makes stale.
ASSET_DEPENDENTS = (
    "assets",
    "asset_inputs",
    "allocation",
    "networth_history",
    "networth_projection",
)
ASSET_INPUT_DEPENDENTS = ("asset_inputs", "allocation", "networth_history", "networth_projection")
TARGET_DEPENDENTS = ("allocation_targets", "allocation")
EXPENSE_DEPENDENTS = ("expenses", "budgets")
SUBCATEGORY_DEPENDENTS = ("subcategories", "expenses")


class ClientError(Exception):
    def __init__(self, code: str, message: str, status_code: int, details: Any = None) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details


class QueryCache:
    """Keeps the last result of every read, keyed by resource and parameters."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, tuple], Any] = {}

    @staticmethod
    def key(resource: str, params: dict | None = None) -> tuple[str, tuple]:
        return resource, tuple(sorted((params or {}).items()))

    def get_or_fetch(self, resource: str, params: dict | None, fetch: Callable[[], Any]) -> Any:
        key = self.key(resource, params)
        if key not in self._entries:
            self._entries[key] = fetch()
        return self._entries[key]

    def contains(self, resource: str, params: dict | None = None) -> bool:
        return self.key(resource, params) in self._entries

    def invalidate(self, resources: Iterable[str]) -> None:
        stale = set(resources)
        for key in [key for key in self._entries if key[0] in stale]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()


class FinallyClient:
    """Talks to the FinAlly API and caches reads until a mutation invalidates them.

    ``session`` may be any object with a requests-compatible ``request``
    method, e.g. ``requests.Session`` or an httpx/TestClient instance.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        session=None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout
        self.cache = QueryCache()

    def _request(self, method: str, path: str, params: dict | None = None, json: dict | None = None):
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        response = self.session.request(
            method,
            f"{self.base_url}{path}",
            headers=headers,
            params=params,
            json=json,
            timeout=self.timeout,
        )
        if response.status_code == 204 or not response.content:
            if response.status_code >= 400:
                raise ClientError("HTTP_ERROR", "Empty error response", response.status_code)
            return None
        try:
            body = response.json()
        except ValueError as exc:
            raise ClientError("INVALID_RESPONSE", "Response is not JSON", response.status_code) from exc

        if not body.get("success"):
            error = body.get("error") or {}
            logger.warning("%s %s failed: %s", method, path, error.get("code"))
            raise ClientError(
                error.get("code", "UNKNOWN_ERROR"),
                error.get("message", "Request failed"),
                response.status_code,
                error.get("details"),
            )
        return body.get("data")

    def _read(self, resource: str, path: str, params: dict | None = None):
        return self.cache.get_or_fetch(
            resource, params, lambda: self._request("GET", path, params=params)
        )

    def _mutate(self, method: str, path: str, invalidates: Iterable[str], json: dict | None = None):
        data = self._request(method, path, json=json)
        self.cache.invalidate(invalidates)
        return data

    def health(self):
        return self._request("GET", "/health")

    def get_me(self):
        return self._read("user", "/users/me")

    def update_me(self, display_name: str):
        return self._mutate("PATCH", "/users/me", ("user",), json={"display_name": display_name})

    def export_data(self):
        return self._request("GET", "/export/data")

    def asset_categories(self):
        return self._read("asset_categories", "/asset-categories")

    def income_categories(self):
        return self._read("income_categories", "/income-categories")

    def expense_categories(self):
        return self._read("expense_categories", "/expense-categories")

    def list_assets(self):
        return self._read("assets", "/assets")

    def create_asset(self, name: str, category_id: str, ticker: str | None = None, market_cap=None):
        payload = {"name": name, "category_id": category_id, "ticker": ticker}
        if market_cap is not None:
            payload["market_cap"] = market_cap
        return self._mutate("POST", "/assets", ASSET_DEPENDENTS, json=payload)

    def update_asset(self, asset_id: int, **changes):
        return self._mutate("PATCH", f"/assets/{asset_id}", ASSET_DEPENDENTS, json=changes)

    def delete_asset(self, asset_id: int) -> None:
        self._mutate("DELETE", f"/assets/{asset_id}", ASSET_DEPENDENTS)

    def delete_all_assets(self):
        return self._mutate("DELETE", "/assets/all", ASSET_DEPENDENTS)

    def list_asset_inputs(self, year: int, month: int):
        return self._read("asset_inputs", "/asset-inputs", {"year": year, "month": month})

    def save_asset_input(self, asset_id: int, year: int, month: int, total, notes: str | None = None):
        payload = {"asset_id": asset_id, "year": year, "month": month, "total": total, "notes": notes}
        return self._mutate("POST", "/asset-inputs", ASSET_INPUT_DEPENDENTS, json=payload)

    def allocation(self, year: int, month: int):
        return self._read("allocation", "/allocation", {"year": year, "month": month})

    def allocation_targets(self):
        return self._read("allocation_targets", "/category-allocation-targets")

    def save_allocation_target(self, category: str, target_pct):
        return self._mutate(
            "PATCH",
            f"/category-allocation-targets/{category}",
            TARGET_DEPENDENTS,
            json={"target_pct": target_pct},
        )

    def list_budgets(self, year: int, month: int):
        return self._read("budgets", "/budgets", {"year": year, "month": month})

    def save_budget(self, category: str, amount, year: int, month: int):
        return self._mutate(
            "PATCH",
            f"/budgets/{category}",
            ("budgets",),
            json={"amount": amount, "year": year, "month": month},
        )

    def auto_adjust_budgets(self, year: int, month: int):
        return self._mutate("POST", "/budgets/auto-adjust", ("budgets",), json={"year": year, "month": month})

    def list_incomings(self, year: int, month: int):
        return self._read("incomings", "/incomings", {"year": year, "month": month})

    def create_incoming(self, category_id: str, year: int, month: int, amount, description: str | None = None):
        payload = {
            "category_id": category_id,
            "year": year,
            "month": month,
            "amount": amount,
            "description": description,
        }
        return self._mutate("POST", "/incomings", ("incomings",), json=payload)

    def update_incoming(self, incoming_id: int, **changes):
        return self._mutate("PATCH", f"/incomings/{incoming_id}", ("incomings",), json=changes)

    def delete_incoming(self, incoming_id: int) -> None:
        self._mutate("DELETE", f"/incomings/{incoming_id}", ("incomings",))

    def list_expenses(self, year: int, month: int):
        return self._read("expenses", "/expenses", {"year": year, "month": month})

    def create_expense(
        self,
        category_id: str,
        year: int,
        month: int,
        amount,
        description: str | None = None,
        subcategory_id: int | None = None,
    ):
        payload = {
            "category_id": category_id,
            "year": year,
            "month": month,
            "amount": amount,
            "description": description,
            "subcategory_id": subcategory_id,
        }
        return self._mutate("POST", "/expenses", EXPENSE_DEPENDENTS, json=payload)

    def update_expense(self, expense_id: int, **changes):
        return self._mutate("PATCH", f"/expenses/{expense_id}", EXPENSE_DEPENDENTS, json=changes)

    def delete_expense(self, expense_id: int) -> None:
        self._mutate("DELETE", f"/expenses/{expense_id}", EXPENSE_DEPENDENTS)

    def list_subcategories(self, category_id: str):
        return self._read("subcategories", "/subcategories", {"category_id": category_id})

    def create_subcategory(self, parent_category_id: str, name: str):
        payload = {"parent_category_id": parent_category_id, "name": name}
        return self._mutate("POST", "/subcategories", SUBCATEGORY_DEPENDENTS, json=payload)

    def rename_subcategory(self, subcategory_id: int, name: str):
        return self._mutate(
            "PATCH", f"/subcategories/{subcategory_id}", SUBCATEGORY_DEPENDENTS, json={"name": name}
        )

    def delete_subcategory(self, subcategory_id: int):
        return self._mutate("DELETE", f"/subcategories/{subcategory_id}", SUBCATEGORY_DEPENDENTS)

    def networth_history(self, year: int | None = None, month: int | None = None):
        params = _period_params(year, month)
        return self._read("networth_history", "/networth/history", params)

    def networth_projection(self, year: int | None = None, month: int | None = None):
        params = _period_params(year, month)
        return self._read("networth_projection", "/networth/projection", params)


def _period_params(year: int | None, month: int | None) -> dict | None:
    if year is None or month is None:
        return None
    return {"year": year, "month": month}
