"""Source connectors: one adapter per external platform, resolved by provider id.

Each connector exposes two capabilities, ``pull`` and ``disconnect``, plus a
mapping table describing which of its raw metrics feed which ``MetricSet``
field and how the raw value is transformed on the way in. Connectors raise
on failure; the reconciler catches, logs and moves on.
"""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import httpx

from pulse.errors import ConnectorError
from pulse.metrics import FIELD_DIMENSION
from pulse.models import Connection
from pulse.utils import to_number, utcnow

log = logging.getLogger(__name__)

_USER_AGENT = "PulseBot/1.0"
_TIMEOUT = 20.0
_WINDOW_DAYS = 7

# ---------------------------------------------------------------------------
# Mapping tables and transforms
# ---------------------------------------------------------------------------

TRANSFORMS = ("direct", "percentage", "minor_units", "weekly_to_monthly")


@dataclass(frozen=True)
class MetricMapping:
    """How one raw source metric lands in a MetricSet field.

    ``transforms`` are applied left to right, e.g. a 7-day revenue figure
    reported in cents uses ``("minor_units", "weekly_to_monthly")``.
    """
    source_metric: str
    dimension: str
    field: str
    transforms: tuple[str, ...] = ("direct",)

    def __post_init__(self) -> None:
        if FIELD_DIMENSION.get(self.field) != self.dimension:
            raise ValueError(f"{self.field} does not belong to dimension {self.dimension}")
        unknown = [t for t in self.transforms if t not in TRANSFORMS]
        if unknown:
            raise ValueError(f"Unknown transform(s): {unknown}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_metric": self.source_metric, "dimension": self.dimension,
            "field": self.field, "transforms": list(self.transforms),
        }


def apply_transform(value: float, kind: str) -> float:
    if kind == "percentage":
        # Fractions in [0, 1] become percentages; anything else is taken as already 0-100.
        return value * 100 if 0 <= value <= 1 else value
    if kind == "minor_units":
        return value / 100
    if kind == "weekly_to_monthly":
        return value * 30 / 7
    return value


def apply_transforms(value: float, transforms: tuple[str, ...]) -> float:
    for kind in transforms:
        value = apply_transform(value, kind)
    return value


@dataclass
class PullResult:
    metrics: dict[str, float]
    pulled_at: datetime
    raw: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Connector interface and registry
# ---------------------------------------------------------------------------


class Connector(ABC):
    """Base class for platform adapters."""

    provider: str = ""
    label: str = ""
    mappings: tuple[MetricMapping, ...] = ()

    @abstractmethod
    async def pull(self, connection: Connection) -> PullResult:
        """Fetch current metrics for *connection*. Raises on failure."""

    @abstractmethod
    async def disconnect(self, connection: Connection) -> None:
        """Revoke platform access for *connection*. Raises on failure."""

    def describe(self) -> dict[str, Any]:
        return {
            "provider": self.provider, "label": self.label,
            "mappings": [m.to_dict() for m in self.mappings],
        }


_REGISTRY: dict[str, Connector] = {}


def register_connector(connector: Connector) -> Connector:
    if not connector.provider:
        raise ValueError("Connector must declare a provider id")
    _REGISTRY[connector.provider] = connector
    return connector


def get_connector(provider: str) -> Connector | None:
    return _REGISTRY.get(provider)


def all_connectors() -> list[Connector]:
    return [_REGISTRY[p] for p in sorted(_REGISTRY)]


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


async def _request_json(
    provider: str,
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
    json_body: Any = None,
    data: dict[str, Any] | None = None,
    auth: tuple[str, str] | None = None,
) -> Any:
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(_TIMEOUT),
        headers={"User-Agent": _USER_AGENT, **(headers or {})},
    ) as client:
        resp = await client.request(method, url, params=params, json=json_body, data=data, auth=auth)
    if resp.status_code >= 400:
        raise ConnectorError(provider, f"HTTP {resp.status_code} from {url}: {resp.text[:200]}")
    if not resp.content:
        return {}
    try:
        return resp.json()
    except ValueError as exc:
        raise ConnectorError(provider, f"Invalid JSON from {url}") from exc


def _require(provider: str, **values: str) -> None:
    missing = [k for k, v in values.items() if not (v or "").strip()]
    if missing:
        raise ConnectorError(provider, f"Connection is missing {', '.join(missing)}")


# ---------------------------------------------------------------------------
# Shopify
# ---------------------------------------------------------------------------

_SHOPIFY_SESSIONS_QUERY = (
    "FROM sessions SINCE -7d UNTIL today "
    "SHOW sum(sessions) AS total_sessions, sum(converted_sessions) AS converted_sessions"
)


class ShopifyConnector(Connector):
    provider = "shopify"
    label = "Shopify"
    mappings = (
        MetricMapping("totalRevenue", "revenue", "revenue_monthly", ("weekly_to_monthly",)),
        MetricMapping("averageOrderValue", "revenue", "avg_order_value"),
        MetricMapping("conversionRate", "acquisition", "conversion_rate_pct", ("percentage",)),
        MetricMapping("sessions", "acquisition", "traffic_monthly", ("weekly_to_monthly",)),
    )

    def _base_url(self, connection: Connection) -> str:
        domain = connection.store_domain.strip().removeprefix("https://").rstrip("/")
        version = os.environ.get("SHOPIFY_API_VERSION", "2024-07")
        return f"https://{domain}/admin/api/{version}"

    async def pull(self, connection: Connection) -> PullResult:
        _require(self.provider, store_domain=connection.store_domain, access_token=connection.access_token)
        base = self._base_url(connection)
        headers = {"X-Shopify-Access-Token": connection.access_token}
        since = utcnow() - timedelta(days=_WINDOW_DAYS)

        payload = await _request_json(
            self.provider, "GET", f"{base}/orders.json", headers=headers,
            params={"status": "any", "created_at_min": since.isoformat(), "limit": 250, "fields": "total_price"},
        )
        orders = payload.get("orders", []) if isinstance(payload, dict) else []
        total = sum(to_number(o.get("total_price")) or 0.0 for o in orders)
        metrics: dict[str, float] = {"totalRevenue": total, "orderCount": float(len(orders))}
        if orders:
            metrics["averageOrderValue"] = total / len(orders)

        # Session analytics require a plan with ShopifyQL access.
        try:
            sessions, converted = await self._sessions(base, headers)
        except (ConnectorError, KeyError, IndexError, TypeError) as exc:
            log.warning("Shopify sessions query failed for %s: %s", connection.store_domain, exc)
        else:
            if sessions is not None:
                metrics["sessions"] = sessions
                if sessions > 0 and converted is not None:
                    metrics["conversionRate"] = converted / sessions

        return PullResult(metrics=metrics, pulled_at=utcnow(), raw={"orders": len(orders)})

    async def _sessions(self, base: str, headers: dict[str, str]) -> tuple[float | None, float | None]:
        query = (
            '{ shopifyqlQuery(query: "%s") { ... on TableResponse { tableData { rowData } } } }'
            % _SHOPIFY_SESSIONS_QUERY
        )
        payload = await _request_json(
            self.provider, "POST", f"{base}/graphql.json", headers=headers, json_body={"query": query},
        )
        rows = payload["data"]["shopifyqlQuery"]["tableData"]["rowData"]
        if not rows:
            return None, None
        return to_number(rows[0][0]), to_number(rows[0][1])

    async def disconnect(self, connection: Connection) -> None:
        _require(self.provider, store_domain=connection.store_domain, access_token=connection.access_token)
        domain = connection.store_domain.strip().removeprefix("https://").rstrip("/")
        await _request_json(
            self.provider, "DELETE", f"https://{domain}/admin/api_permissions/current.json",
            headers={"X-Shopify-Access-Token": connection.access_token},
        )


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

STRIPE_API = "https://api.stripe.com/v1"


class StripeConnector(Connector):
    provider = "stripe"
    label = "Stripe"
    mappings = (
        MetricMapping("totalRevenue", "revenue", "revenue_monthly", ("minor_units", "weekly_to_monthly")),
        MetricMapping("averageOrderValue", "revenue", "avg_order_value", ("minor_units",)),
        MetricMapping("churnRate", "retention", "churn_monthly_pct", ("percentage",)),
        MetricMapping("grossMargin", "profitability", "gross_margin_pct", ("percentage",)),
    )

    async def pull(self, connection: Connection) -> PullResult:
        _require(self.provider, access_token=connection.access_token)
        headers = {"Authorization": f"Bearer {connection.access_token}"}
        since = int((utcnow() - timedelta(days=_WINDOW_DAYS)).timestamp())

        txns = await _request_json(
            self.provider, "GET", f"{STRIPE_API}/balance_transactions", headers=headers,
            params={"created[gte]": since, "limit": 100},
        )
        gross = net = 0.0
        charges = 0
        for txn in txns.get("data", []):
            amount = to_number(txn.get("amount")) or 0.0
            if txn.get("type") in ("charge", "payment"):
                gross += amount
                charges += 1
            net += to_number(txn.get("net")) or 0.0

        # Amounts stay in minor units; the mapping table converts them.
        metrics: dict[str, float] = {"totalRevenue": gross, "chargeCount": float(charges)}
        if charges:
            metrics["averageOrderValue"] = gross / charges
        if gross > 0:
            metrics["grossMargin"] = max(net, 0.0) / gross

        subs = await _request_json(
            self.provider, "GET", f"{STRIPE_API}/subscriptions", headers=headers,
            params={"status": "all", "limit": 100},
        )
        active = cancelled = 0
        for sub in subs.get("data", []):
            status = sub.get("status")
            if status in ("active", "trialing", "past_due"):
                active += 1
            elif status == "canceled" and (to_number(sub.get("canceled_at")) or 0) >= since:
                cancelled += 1
        if active + cancelled:
            metrics["churnRate"] = cancelled / (active + cancelled)

        return PullResult(
            metrics=metrics, pulled_at=utcnow(),
            raw={"charges": charges, "active_subscriptions": active, "cancelled_subscriptions": cancelled},
        )

    async def disconnect(self, connection: Connection) -> None:
        client_id = os.environ.get("STRIPE_CLIENT_ID", "")
        secret = os.environ.get("STRIPE_SECRET_KEY", "")
        _require(self.provider, external_id=connection.external_id, STRIPE_CLIENT_ID=client_id, STRIPE_SECRET_KEY=secret)
        await _request_json(
            self.provider, "POST", "https://connect.stripe.com/oauth/deauthorize",
            headers={"Authorization": f"Bearer {secret}"},
            data={"client_id": client_id, "stripe_user_id": connection.external_id},
        )


# ---------------------------------------------------------------------------
# Google Analytics
# ---------------------------------------------------------------------------

GA_DATA_API = "https://analyticsdata.googleapis.com/v1beta"


class GoogleAnalyticsConnector(Connector):
    provider = "google-analytics"
    label = "Google Analytics"
    mappings = (
        MetricMapping("sessions", "acquisition", "traffic_monthly", ("weekly_to_monthly",)),
        MetricMapping("conversionRate", "acquisition", "conversion_rate_pct", ("percentage",)),
    )

    async def pull(self, connection: Connection) -> PullResult:
        _require(self.provider, external_id=connection.external_id, access_token=connection.access_token)
        report = await _request_json(
            self.provider, "POST", f"{GA_DATA_API}/properties/{connection.external_id}:runReport",
            headers={"Authorization": f"Bearer {connection.access_token}"},
            json_body={
                "dateRanges": [{"startDate": f"{_WINDOW_DAYS}daysAgo", "endDate": "today"}],
                "metrics": [{"name": "sessions"}, {"name": "sessionKeyEventRate"}],
            },
        )
        metrics: dict[str, float] = {}
        rows = report.get("rows") or []
        if rows:
            values = [to_number(v.get("value")) for v in rows[0].get("metricValues", [])]
            if len(values) > 0 and values[0] is not None:
                metrics["sessions"] = values[0]
            if len(values) > 1 and values[1] is not None:
                metrics["conversionRate"] = values[1]
        return PullResult(metrics=metrics, pulled_at=utcnow(), raw={"rows": len(rows)})

    async def disconnect(self, connection: Connection) -> None:
        _require(self.provider, access_token=connection.access_token)
        await _request_json(
            self.provider, "POST", "https://oauth2.googleapis.com/revoke",
            params={"token": connection.access_token},
        )


# ---------------------------------------------------------------------------
# QuickBooks
# ---------------------------------------------------------------------------

QB_API_BASE = "https://quickbooks.api.intuit.com/v3/company"
QB_REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"


def _qb_summary(report: dict[str, Any], group: str) -> float | None:
    """Read the summary total of a top-level group (Income, GrossProfit, NetIncome)."""
    for row in report.get("Rows", {}).get("Row", []):
        if row.get("group") == group:
            cols = row.get("Summary", {}).get("ColData", [])
            if len(cols) > 1:
                return to_number(cols[1].get("value"))
    return None


class QuickBooksConnector(Connector):
    provider = "quickbooks"
    label = "QuickBooks"
    mappings = (
        MetricMapping("grossMargin", "profitability", "gross_margin_pct", ("percentage",)),
        MetricMapping("netRevenue", "profitability", "net_profit_monthly"),
    )

    async def pull(self, connection: Connection) -> PullResult:
        _require(self.provider, external_id=connection.external_id, access_token=connection.access_token)
        end = utcnow().date()
        start = end - timedelta(days=30)
        report = await _request_json(
            self.provider, "GET", f"{QB_API_BASE}/{connection.external_id}/reports/ProfitAndLoss",
            headers={"Authorization": f"Bearer {connection.access_token}", "Accept": "application/json"},
            params={"start_date": start.isoformat(), "end_date": end.isoformat(), "minorversion": 75},
        )
        income = _qb_summary(report, "Income")
        gross_profit = _qb_summary(report, "GrossProfit")
        net_income = _qb_summary(report, "NetIncome")

        metrics: dict[str, float] = {}
        if income is not None:
            metrics["totalRevenue"] = income
        if income and gross_profit is not None:
            metrics["grossMargin"] = gross_profit / income
        if net_income is not None:
            metrics["netRevenue"] = net_income
        return PullResult(metrics=metrics, pulled_at=utcnow(), raw={"period_start": start.isoformat()})

    async def disconnect(self, connection: Connection) -> None:
        client_id = os.environ.get("QUICKBOOKS_CLIENT_ID", "")
        secret = os.environ.get("QUICKBOOKS_CLIENT_SECRET", "")
        token = connection.refresh_token or connection.access_token
        _require(self.provider, token=token, QUICKBOOKS_CLIENT_ID=client_id, QUICKBOOKS_CLIENT_SECRET=secret)
        await _request_json(
            self.provider, "POST", QB_REVOKE_URL,
            headers={"Accept": "application/json"}, json_body={"token": token}, auth=(client_id, secret),
        )


for _connector in (ShopifyConnector(), StripeConnector(), GoogleAnalyticsConnector(), QuickBooksConnector()):
    register_connector(_connector)
