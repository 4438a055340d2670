"""Environment variable declarations and validation.

Each variable is declared once as an ``EnvVarSpec``; ``parse`` reads and
converts it, ``validate`` checks a list of them at startup through a pydantic
model built on the fly so every problem is reported in one go.
"""

import os
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from pydantic import ValidationError, create_model

from . import log

logger = log.get_logger(__name__)


@dataclass(frozen=True)
class EnvVarSpec:
    id: str
    default: Optional[str] = None
    parse: Callable[[str], Any] = lambda x: x
    type: Tuple[Any, Any] = (str, ...)
    is_optional: bool = False
    is_secret: bool = False


def parse(var: EnvVarSpec) -> Any:
    value = os.environ.get(var.id, var.default)
    if value is None or (value == "" and var.is_optional):
        return None
    return var.parse(value)


def validate(vars: List[EnvVarSpec]) -> bool:
    fields = {}
    values = {}
    errors = []
    for var in vars:
        field_type, default = var.type
        fields[var.id] = (Optional[field_type], None) if var.is_optional else (field_type, default)
        try:
            values[var.id] = parse(var)
        except (TypeError, ValueError) as e:
            errors.append(f"{var.id}: {e}")

    if not errors:
        try:
            create_model("EnvVars", **fields)(**values)
        except ValidationError as e:
            for err in e.errors():
                var_id = ".".join(str(p) for p in err["loc"])
                shown = "<redacted>" if _is_secret(vars, var_id) else values.get(var_id)
                errors.append(f"{var_id}: {err['msg']} (got {shown!r})")

    for error in errors:
        logger.error(f"Invalid environment variable {error}")
    return not errors


def _is_secret(vars: List[EnvVarSpec], var_id: str) -> bool:
    return any(v.is_secret for v in vars if v.id == var_id)
