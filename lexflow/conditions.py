"""Condition evaluation for workflow steps and triggers.

Conditions are named predicates ``(value, reference, operator) -> bool``. The
evaluated value is read from the execution context (``condition.field`` or the
predicate's default field) and the reference comes from ``condition.value``.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from .contracts import StepCondition, utcnow
from .errors import ConditionError

logger = logging.getLogger(__name__)

Predicate = Callable[[Any, Any, Optional[str]], bool]

FIELD_OPERATORS = frozenset(
    {"==", "!=", ">", "<", ">=", "<=", "contains", "not_contains", "in", "not_in"}
)

_MISSING = object()

BUILTIN_PREDICATES: Dict[str, Predicate] = {}
BUILTIN_DEFAULT_FIELDS: Dict[str, str] = {}


def _builtin(key: str, default_field: Optional[str] = None):
    def decorator(fn: Predicate) -> Predicate:
        BUILTIN_PREDICATES[key] = fn
        if default_field:
            BUILTIN_DEFAULT_FIELDS[key] = default_field
        return fn

    return decorator


def resolve_path(context: Mapping[str, Any], path: str) -> Any:
    """Return the value at dotted ``path`` or ``_MISSING``."""
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ConditionError(f"Expected a number, got boolean {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConditionError(f"Expected a number, got {value!r}")


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            raise ConditionError(f"Expected an ISO date, got {value!r}")
    else:
        raise ConditionError(f"Expected a date, got {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_list(value: Any) -> list:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def compare(value: Any, reference: Any, operator: Optional[str]) -> bool:
    """Generic field comparison used by CAMPO_VALOR."""
    if operator == "==":
        return value == reference
    if operator == "!=":
        return value != reference
    if operator in (">", "<", ">=", "<="):
        try:
            if operator == ">":
                return value > reference
            if operator == "<":
                return value < reference
            if operator == ">=":
                return value >= reference
            return value <= reference
        except TypeError:
            raise ConditionError(f"Cannot compare {value!r} {operator} {reference!r}")
    if operator in ("contains", "not_contains"):
        if isinstance(value, (list, tuple, set, frozenset)):
            found = reference in value
        else:
            found = str(reference) in str(value)
        return found if operator == "contains" else not found
    if operator in ("in", "not_in"):
        if not isinstance(reference, (list, tuple, set, frozenset)):
            return False
        found = value in reference
        return found if operator == "in" else not found
    raise ConditionError(f"Unsupported operator: {operator!r}")


@_builtin("MONTO_MAYOR", default_field="monto")
def monto_mayor(value: Any, reference: Any, _operator: Optional[str] = None) -> bool:
    return _as_number(value) > _as_number(reference)


@_builtin("MONTO_MENOR", default_field="monto")
def monto_menor(value: Any, reference: Any, _operator: Optional[str] = None) -> bool:
    return _as_number(value) < _as_number(reference)


@_builtin("MONTO_IGUAL", default_field="monto")
def monto_igual(value: Any, reference: Any, _operator: Optional[str] = None) -> bool:
    return _as_number(value) == _as_number(reference)


@_builtin("FECHA_VENCIMIENTO", default_field="fechaVencimiento")
def fecha_vencimiento(value: Any, reference: Any, _operator: Optional[str] = None) -> bool:
    """True when the date is due within ``reference`` days (or already past)."""
    remaining = _as_datetime(value) - utcnow()
    return remaining.total_seconds() / 86400 <= _as_number(reference)


@_builtin("CAMPO_VALOR")
def campo_valor(value: Any, reference: Any, operator: Optional[str] = None) -> bool:
    return compare(value, reference, operator or "==")


@_builtin("ESTADO_CASO", default_field="estadoCaso")
def estado_caso(value: Any, reference: Any, _operator: Optional[str] = None) -> bool:
    return value in _as_list(reference)


@_builtin("DOCUMENTO_PRESENTE", default_field="documentos")
def documento_presente(value: Any, reference: Any, _operator: Optional[str] = None) -> bool:
    for doc in _as_list(value):
        doc_type = doc.get("tipo") if isinstance(doc, Mapping) else doc
        if doc_type == reference:
            return True
    return False


@_builtin("ROL_USUARIO", default_field="roles")
def rol_usuario(value: Any, reference: Any, _operator: Optional[str] = None) -> bool:
    return bool(set(_as_list(value)) & set(_as_list(reference)))


class ConditionEvaluator:
    """Registry of named predicates evaluated against execution context."""

    def __init__(self, include_builtins: bool = True) -> None:
        self._predicates: Dict[str, Predicate] = {}
        self._default_fields: Dict[str, str] = {}
        if include_builtins:
            self._predicates.update(BUILTIN_PREDICATES)
            self._default_fields.update(BUILTIN_DEFAULT_FIELDS)

    def register(
        self,
        key: str,
        predicate: Optional[Predicate] = None,
        *,
        default_field: Optional[str] = None,
    ):
        """Register ``predicate`` under ``key``. Usable as a decorator."""

        def decorator(fn: Predicate) -> Predicate:
            self._predicates[key] = fn
            if default_field:
                self._default_fields[key] = default_field
            return fn

        if predicate is not None:
            return decorator(predicate)
        return decorator

    def knows(self, key: str) -> bool:
        return key in self._predicates

    def field_for(self, condition: StepCondition) -> Optional[str]:
        return condition.field or self._default_fields.get(condition.type)

    @property
    def keys(self) -> list[str]:
        return sorted(self._predicates)

    def evaluate(self, condition: StepCondition, context: Mapping[str, Any]) -> bool:
        """Evaluate a single condition.

        A missing context value evaluates to ``False``. Unknown keys and
        incomparable operands raise :class:`ConditionError`.
        """
        predicate = self._predicates.get(condition.type)
        if predicate is None:
            raise ConditionError(f"Unknown condition type: {condition.type}")
        path = self.field_for(condition)
        if not path:
            raise ConditionError(f"Condition {condition.type} requires a field")
        value = resolve_path(context, path)
        if value is _MISSING:
            logger.debug(f"Condition {condition.type}: '{path}' not in context")
            return False
        try:
            return bool(predicate(value, condition.value, condition.operator))
        except ConditionError:
            raise
        except Exception as e:
            raise ConditionError(f"Condition {condition.type} failed: {e}") from e

    def evaluate_all(
        self, conditions: Iterable[StepCondition], context: Mapping[str, Any]
    ) -> bool:
        """AND of every condition. An empty list is ``True``."""
        return all(self.evaluate(c, context) for c in conditions)
