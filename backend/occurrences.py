"""Combine single events and expanded recurring occurrences into one calendar window."""
from flask import current_app, has_app_context

from backend.records import InvalidRecordError
from backend.recurrence import Occurrence, expand, intersects


def _sort_key(occurrence):
    return (occurrence.start, str(occurrence.event_id))


def merge(non_recurring_events, recurring_occurrences):
    """
    Single events plus recurring occurrences, ordered by start instant.
    Ties fall back to the event id compared as text so reruns render identically.
    """
    merged = [
        item if isinstance(item, Occurrence) else Occurrence.from_event(item)
        for item in non_recurring_events
    ]
    merged.extend(recurring_occurrences)
    return sorted(merged, key=_sort_key)


def occurrences_in_window(store, user_id, window_start, window_end):
    """Everything on a user's calendar overlapping [window_start, window_end]."""
    singles, recurring = store.get_user_events(user_id, window_start, window_end)

    visible = [
        ev for ev in singles
        if intersects(ev.start, ev.end, ev.is_all_day, window_start, window_end)
    ]
    expanded = []
    for event, rule in recurring:
        if rule is None:
            _warn(f"Recurring event {event.id} has no usable recurrence rule; showing it once")
            if intersects(event.start, event.end, event.is_all_day, window_start, window_end):
                visible.append(event)
            continue
        try:
            expanded.extend(expand(event, rule, window_start, window_end))
        except InvalidRecordError as exc:
            _warn(f"Skipping recurrence for event {event.id}: {exc}")
            if intersects(event.start, event.end, event.is_all_day, window_start, window_end):
                visible.append(event)
    return merge(visible, expanded)


def _warn(message):
    if has_app_context():
        current_app.logger.warning(message)
