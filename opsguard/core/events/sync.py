# opsguard/core/events/sync.py
from __future__ import annotations
from dataclasses import fields, replace
from typing import Callable, Dict, Iterable, List, Optional

from .adapter import MAX_FEED_EVENTS
from .models import Event, SyncBatch

PINNED_ID_PREFIXES = ("manual-map-", "photo-log-")


def is_pinned_event(evt: Event) -> bool:
    """Operator-placed markers and reference-photo seeds survive a replace-mode sync."""
    return evt.id.startswith(PINNED_ID_PREFIXES)


def sort_events(events: Iterable[Event]) -> List[Event]:
    return sorted(events, key=lambda e: (-e.detected_at, -e.ingested_at, e.id))


def shallow_merge(prev: Event, nxt: Event) -> Event:
    """Every field comes from the incoming record, None included; a same-id update replaces."""
    return replace(prev, **{f.name: getattr(nxt, f.name) for f in fields(Event)})


def _clamp_limit(max_events: Optional[int], default: int) -> int:
    if max_events is None:
        return default
    try:
        limit = int(max_events)
    except (TypeError, ValueError, OverflowError):
        return default
    return max(1, min(MAX_FEED_EVENTS, limit))


def _merge_into(by_id: Dict[str, Event], incoming: Iterable[Event]) -> None:
    for evt in incoming:
        prev = by_id.get(evt.id)
        by_id[evt.id] = shallow_merge(prev, evt) if prev is not None else evt


def merge_events(existing: Iterable[Event], incoming: Iterable[Event],
                 max_events: Optional[int] = None) -> List[Event]:
    by_id: Dict[str, Event] = {e.id: e for e in existing}
    _merge_into(by_id, incoming)
    ordered = sort_events(by_id.values())
    return ordered[:_clamp_limit(max_events, len(ordered) or 1)]


def apply_incoming_sync_batch(existing: List[Event], batch: SyncBatch, max_events: int,
                              is_pinned: Callable[[Event], bool] = is_pinned_event) -> List[Event]:
    """
    replace: drop everything not pinned, then merge upserts.
    merge:   merge upserts onto the full existing set.
    Removals apply in both modes. Applying the same batch twice is a no-op.
    """
    base = [e for e in existing if is_pinned(e)] if batch.mode == "replace" else list(existing)
    by_id: Dict[str, Event] = {e.id: e for e in base}
    _merge_into(by_id, batch.upsert)

    for rid in batch.remove_ids:
        by_id.pop(rid, None)

    return sort_events(by_id.values())[:_clamp_limit(max_events, MAX_FEED_EVENTS)]
