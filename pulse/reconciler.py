"""Metric reconciliation: merge manual metrics with fresh pulls from connected sources.

Per field, the single freshest observation wins. Pulled values only replace
a value already held in this pass when their timestamp is strictly newer;
manual values fill the gaps and win when they were entered strictly after
the freshest pull. Nothing is ever averaged.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Iterable

from sqlalchemy.orm import Session

from pulse.connectors import MetricMapping, PullResult, apply_transforms, get_connector
from pulse.errors import ProfileIncomplete
from pulse.metrics import METRIC_FIELDS, MetricSet
from pulse.models import Connection, MetricProfile, Subject, SyncLog
from pulse.utils import as_utc, json_parse, parse_timestamp, to_number, utcnow

log = logging.getLogger(__name__)

MANUAL_SOURCE = "manual"
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class Attribution:
    source: str
    observed_at: datetime

    def to_dict(self) -> dict[str, str]:
        return {"source": self.source, "observed_at": self.observed_at.isoformat()}

    @classmethod
    def from_dict(cls, data: Any) -> Attribution | None:
        if not isinstance(data, dict) or not data.get("source"):
            return None
        observed_at = parse_timestamp(data.get("observed_at"))
        if observed_at is None:
            return None
        return cls(source=str(data["source"]), observed_at=observed_at)


@dataclass
class Reconciliation:
    metrics: MetricSet
    attribution: dict[str, Attribution]
    pulled: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def sources_dict(self) -> dict[str, dict[str, str]]:
        return {f: self.attribution[f].to_dict() for f in METRIC_FIELDS if f in self.attribution}


# ---------------------------------------------------------------------------
# Pure merge steps
# ---------------------------------------------------------------------------


def merge_pulls(
    pulls: Iterable[tuple[str, Iterable[MetricMapping], PullResult]],
) -> tuple[dict[str, float], dict[str, Attribution]]:
    """Fold ``(provider, mappings, result)`` triples into freshest-wins values.

    A field is overwritten only if nothing is held for it yet or the new
    observation is strictly newer than the held one.
    """
    values: dict[str, float] = {}
    held: dict[str, Attribution] = {}
    for provider, mappings, result in pulls:
        pulled_at = as_utc(result.pulled_at)
        for mapping in mappings:
            raw = to_number(result.metrics.get(mapping.source_metric))
            if raw is None:
                continue
            current = held.get(mapping.field)
            if current is not None and not pulled_at > current.observed_at:
                continue
            values[mapping.field] = apply_transforms(raw, mapping.transforms)
            held[mapping.field] = Attribution(provider, pulled_at)
    return values, held


def overlay_manual(
    values: dict[str, float],
    held: dict[str, Attribution],
    manual: MetricSet,
    manual_attribution: dict[str, Attribution],
) -> None:
    """Fill unset fields from the manual set; a strictly newer manual entry also wins."""
    for name in METRIC_FIELDS:
        value = manual.get(name)
        if value is None:
            continue
        entered = manual_attribution.get(name) or Attribution(MANUAL_SOURCE, _EPOCH)
        current = held.get(name)
        if current is None or entered.observed_at > current.observed_at:
            values[name] = value
            held[name] = entered


def manual_attribution(profile: MetricProfile) -> dict[str, Attribution]:
    """Per-field provenance of the stored profile; untracked fields date from the last manual edit."""
    stored = json_parse(profile.field_sources_json, {})
    if not isinstance(stored, dict):
        stored = {}
    fallback = Attribution(MANUAL_SOURCE, as_utc(profile.updated_at) or _EPOCH)
    result: dict[str, Attribution] = {}
    for name in METRIC_FIELDS:
        if getattr(profile, name) is None:
            continue
        result[name] = Attribution.from_dict(stored.get(name)) or fallback
    return result


# ---------------------------------------------------------------------------
# Source pulls
# ---------------------------------------------------------------------------


def _log_sync(session: Session, connection: Connection, status: str, fields_updated: int,
              error: str, started: float) -> None:
    session.add(SyncLog(
        connection_id=connection.id, provider=connection.provider, status=status,
        fields_updated=fields_updated, error=error[:1000],
        duration_ms=int((time.monotonic() - started) * 1000), synced_at=utcnow(),
    ))


async def pull_sources(
    session: Session, subject: Subject,
) -> tuple[list[tuple[str, tuple[MetricMapping, ...], PullResult]], list[str]]:
    """Pull every active connection sequentially. Failures are logged and skipped."""
    pulls: list[tuple[str, tuple[MetricMapping, ...], PullResult]] = []
    failed: list[str] = []
    for connection in subject.connections:
        if connection.status == "disconnected":
            continue
        connector = get_connector(connection.provider)
        if connector is None:
            log.warning("No connector registered for provider %r (subject %s)", connection.provider, subject.id)
            continue
        started = time.monotonic()
        try:
            result = await connector.pull(connection)
        except Exception as exc:
            log.warning("Pull failed (%s) for subject %s: %s", connection.provider, subject.id, exc)
            connection.status = "error"
            connection.last_sync_status = "error"
            connection.last_sync_error = str(exc)[:1000]
            _log_sync(session, connection, "error", 0, str(exc), started)
            failed.append(connection.provider)
            continue
        supplied = sum(1 for m in connector.mappings if to_number(result.metrics.get(m.source_metric)) is not None)
        connection.status = "connected"
        connection.last_sync_at = result.pulled_at
        connection.last_sync_status = "success"
        connection.last_sync_error = ""
        _log_sync(session, connection, "success", supplied, "", started)
        pulls.append((connection.provider, connector.mappings, result))
    return pulls, failed


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def write_back(profile: MetricProfile, values: dict[str, float], held: dict[str, Attribution],
               pulled_fields: set[str]) -> None:
    """Store externally sourced values on the manual profile with their provenance."""
    stored = json_parse(profile.field_sources_json, {})
    if not isinstance(stored, dict):
        stored = {}
    for name in pulled_fields:
        attribution = held.get(name)
        if attribution is None or attribution.source == MANUAL_SOURCE:
            continue
        setattr(profile, name, values[name])
        stored[name] = attribution.to_dict()
    profile.field_sources_json = json.dumps(stored, sort_keys=True)


async def reconcile(session: Session, subject: Subject) -> Reconciliation:
    """Produce the merged MetricSet and attribution map for *subject* (caller must commit).

    The subject must have a metric profile. Side effects: connection status
    and sync logs, write-back of pulled fields into the profile, and the
    attribution map stored on the subject.
    """
    profile = subject.profile
    if profile is None:
        raise ProfileIncomplete(subject.id, list(METRIC_FIELDS))

    pulls, failed = await pull_sources(session, subject)
    values, held = merge_pulls(pulls)
    pulled_fields = set(values)
    overlay_manual(values, held, MetricSet.from_object(profile), manual_attribution(profile))

    write_back(profile, values, held, pulled_fields)
    reconciliation = Reconciliation(
        metrics=MetricSet.from_mapping(values),
        attribution=held,
        pulled=[provider for provider, _, _ in pulls],
        failed=failed,
    )
    subject.metric_sources_json = json.dumps(reconciliation.sources_dict())
    return reconciliation
