"""
Field-level diffs between a report and a set of proposed values.

The editable fields form a closed set. Each field has a kind that decides
how its values are normalized and compared:

- TEXT: None and "" are the same value, surrounding whitespace is ignored
- LIST: order-insensitive set of trimmed entries; case is significant.
  Rendered as a canonical ", "-joined string (de-duplicated, sorted
  case-insensitively) in change sets

Change sets are ordered by field declaration order and never contain
no-op entries.
"""
from dataclasses import dataclass
from enum import Enum
from collections.abc import Mapping
from typing import Any, Dict, Iterable, List

from .exceptions import ValidationError


class FieldKind(str, Enum):
    TEXT = 'text'
    LIST = 'list'


@dataclass(frozen=True)
class EditableField:
    path: str
    label: str
    kind: FieldKind


EDITABLE_FIELDS = (
    EditableField('patient_complaint', 'Patient complaint', FieldKind.TEXT),
    EditableField('history_present', 'History of present illness', FieldKind.TEXT),
    EditableField('history_past', 'Past medical history', FieldKind.TEXT),
    EditableField('diagnosis.primary', 'Primary diagnosis', FieldKind.TEXT),
    EditableField('diagnosis.secondary', 'Secondary diagnoses', FieldKind.LIST),
    EditableField('additional_notes', 'Additional notes', FieldKind.TEXT),
    EditableField('follow_up_instructions', 'Follow-up instructions', FieldKind.TEXT),
)

FIELDS_BY_PATH = {field.path: field for field in EDITABLE_FIELDS}

LIST_SEPARATOR = ', '


@dataclass(frozen=True)
class FieldChange:
    field: str
    label: str
    from_value: str
    to_value: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            'field': self.field,
            'label': self.label,
            'from': self.from_value,
            'to': self.to_value,
        }


def get_field(path: str) -> EditableField:
    try:
        return FIELDS_BY_PATH[path]
    except KeyError:
        raise ValidationError(
            f"Unknown editable field '{path}'",
            details={'field': path, 'allowed': list(FIELDS_BY_PATH)}
        )


# ============================================================================
# Normalization & equality
# ============================================================================

def _list_entries(value) -> List[str]:
    """Split a LIST value into trimmed, de-duplicated entries sorted case-insensitively."""
    if value is None:
        return []
    if isinstance(value, str):
        raw_items = value.split(',')
    elif isinstance(value, (list, tuple, set, frozenset)):
        raw_items = value
    else:
        raw_items = [value]

    entries = []
    seen = set()
    for item in raw_items:
        if item is None:
            continue
        text = str(item).strip()
        if not text or text in seen:
            continue
        seen.add(text)
        entries.append(text)
    return sorted(entries, key=lambda entry: (entry.casefold(), entry))


def normalize(field: EditableField, value) -> str:
    """Canonical string form of a field value, used in change sets."""
    if field.kind is FieldKind.LIST:
        return LIST_SEPARATOR.join(_list_entries(value))
    if value is None:
        return ''
    return str(value).strip()


def text_equals(a, b) -> bool:
    return ('' if a is None else str(a).strip()) == ('' if b is None else str(b).strip())


def list_equals(a, b) -> bool:
    return set(_list_entries(a)) == set(_list_entries(b))


def field_equals(field: EditableField, a, b) -> bool:
    if field.kind is FieldKind.LIST:
        return list_equals(a, b)
    return text_equals(a, b)


# ============================================================================
# Reading & writing dot paths
# ============================================================================

def read_field(entity, path: str):
    """Resolve a dot path over attributes and nested dicts. Absent -> None."""
    current = entity
    for key in path.split('.'):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(key)
        else:
            current = getattr(current, key, None)
    return current


def _to_storage(field: EditableField, value):
    if field.kind is FieldKind.LIST:
        return _list_entries(value)
    return normalize(field, value)


def write_field(entity, path: str, value) -> None:
    """
    Write a value into the entity at a dot path.

    Nested containers are copied before being modified so the previous
    dict object is never mutated in place.
    """
    field = get_field(path)
    keys = path.split('.')
    stored = _to_storage(field, value)

    if len(keys) == 1:
        setattr(entity, keys[0], stored)
        return

    head, leaf = keys[0], keys[1:]
    container = dict(read_field(entity, head) or {})
    target = container
    for key in leaf[:-1]:
        target[key] = dict(target.get(key) or {})
        target = target[key]
    target[leaf[-1]] = stored
    setattr(entity, head, container)


# ============================================================================
# Diff computation
# ============================================================================

def compute_changes(baseline, candidate: Mapping[str, Any]) -> List[FieldChange]:
    """
    Compute the minimal change set between a baseline and candidate values.

    Args:
        baseline: Report (or dict) holding the current values; read-only
        candidate: Proposed values keyed by field path; fields not present
            are not compared

    Returns:
        List of FieldChange in field declaration order; empty when nothing
        differs

    Raises:
        ValidationError: candidate contains an unknown field path
    """
    unknown = [path for path in candidate if path not in FIELDS_BY_PATH]
    if unknown:
        raise ValidationError(
            f"Unknown editable field(s): {', '.join(sorted(unknown))}",
            details={'fields': sorted(unknown), 'allowed': list(FIELDS_BY_PATH)}
        )

    changes = []
    for field in EDITABLE_FIELDS:
        if field.path not in candidate:
            continue
        current = read_field(baseline, field.path)
        proposed = candidate[field.path]
        if field_equals(field, current, proposed):
            continue
        changes.append(FieldChange(
            field=field.path,
            label=field.label,
            from_value=normalize(field, current),
            to_value=normalize(field, proposed),
        ))
    return changes


def changes_to_dict(changes: Iterable[FieldChange]) -> Dict[str, Dict[str, str]]:
    """Persisted shape: {field: {"from": ..., "to": ...}} in declaration order."""
    return {
        change.field: {'from': change.from_value, 'to': change.to_value}
        for change in changes
    }


def changes_from_dict(mapping: Mapping[str, Mapping[str, Any]]) -> List[FieldChange]:
    """
    Parse a persisted change set.

    Entries are re-normalized, no-op entries are dropped and the result is
    returned in declaration order.

    Raises:
        ValidationError: unknown field or an entry without from/to
    """
    changes = []
    for path in mapping:
        get_field(path)

    for field in EDITABLE_FIELDS:
        if field.path not in mapping:
            continue
        entry = mapping[field.path]
        if not isinstance(entry, Mapping) or 'from' not in entry or 'to' not in entry:
            raise ValidationError(
                f"Change for '{field.path}' must have 'from' and 'to'",
                details={'field': field.path}
            )
        if field_equals(field, entry['from'], entry['to']):
            continue
        changes.append(FieldChange(
            field=field.path,
            label=field.label,
            from_value=normalize(field, entry['from']),
            to_value=normalize(field, entry['to']),
        ))
    return changes


def find_stale_fields(entity, changes: Iterable[FieldChange]) -> List[str]:
    """Fields whose current value no longer matches the recorded 'from' value."""
    return [
        change.field
        for change in changes
        if not field_equals(get_field(change.field), read_field(entity, change.field), change.from_value)
    ]


def apply_changes(entity, changes: Iterable[FieldChange]) -> None:
    for change in changes:
        write_field(entity, change.field, change.to_value)


def snapshot(entity) -> Dict[str, str]:
    """All editable fields of the entity in canonical form."""
    return {field.path: normalize(field, read_field(entity, field.path)) for field in EDITABLE_FIELDS}
