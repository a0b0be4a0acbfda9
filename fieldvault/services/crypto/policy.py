from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterable, Mapping

from fieldvault.core.config import get_settings
from fieldvault.core.errors import PolicyConfigurationError


logger = logging.getLogger(__name__)

# Fields encrypted when no policy is configured explicitly.
DEFAULT_TABLE_FIELDS: dict[str, dict[str, bool]] = {
    "contacts": {"phone_number": True, "whatsapp_id": True},
    "profiles": {"email": True},
}


@dataclass(frozen=True)
class FieldPolicy:
    name: str
    sensitive: bool
    tables: frozenset[str] = frozenset()


@dataclass(frozen=True)
class FieldDeclaration:
    table: str | None
    field: str
    sensitive: bool


class FieldPolicyRegistry:
    """Startup-validated mapping of field names to sensitivity.

    One physical field name has exactly one sensitivity flag across every
    table that declares it; conflicting declarations are rejected here rather
    than resolved by precedence at call time.
    """

    def __init__(self, declarations: Iterable[FieldDeclaration]) -> None:
        policies: dict[str, FieldPolicy] = {}
        table_fields: dict[str, list[str]] = {}
        for declaration in declarations:
            name = declaration.field.strip()
            if not name:
                raise PolicyConfigurationError("Field names must be non-empty")
            existing = policies.get(name)
            if existing is not None and existing.sensitive != declaration.sensitive:
                raise PolicyConfigurationError(
                    f"Conflicting sensitivity for field '{name}' "
                    f"(tables {sorted(existing.tables)} vs {declaration.table!r})"
                )
            tables = set(existing.tables) if existing is not None else set()
            if declaration.table:
                tables.add(declaration.table)
                columns = table_fields.setdefault(declaration.table, [])
                if name not in columns:
                    columns.append(name)
            policies[name] = FieldPolicy(name=name, sensitive=declaration.sensitive, tables=frozenset(tables))
        self._policies = policies
        self._table_fields = table_fields

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "FieldPolicyRegistry":
        # Accept {table: {field: bool}} or {table: [field, ...]} (all listed fields sensitive).
        declarations: list[FieldDeclaration] = []
        for table, declared in mapping.items():
            if isinstance(declared, Mapping):
                for field_name, sensitive in declared.items():
                    if not isinstance(sensitive, bool):
                        raise PolicyConfigurationError(
                            f"Sensitivity for {table}.{field_name} must be a boolean"
                        )
                    declarations.append(FieldDeclaration(table=str(table), field=str(field_name), sensitive=sensitive))
            elif isinstance(declared, (list, tuple)):
                for field_name in declared:
                    declarations.append(FieldDeclaration(table=str(table), field=str(field_name), sensitive=True))
            else:
                raise PolicyConfigurationError(f"Invalid field policy for table '{table}'")
        return cls(declarations)

    @classmethod
    def from_json(cls, raw: str) -> "FieldPolicyRegistry":
        if not raw.strip():
            return cls.from_mapping(DEFAULT_TABLE_FIELDS)
        try:
            mapping = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PolicyConfigurationError("FIELDVAULT_FIELD_POLICIES must be a JSON object") from exc
        if not isinstance(mapping, dict):
            raise PolicyConfigurationError("FIELDVAULT_FIELD_POLICIES must be a JSON object")
        return cls.from_mapping(mapping)

    def lookup(self, field_name: str) -> FieldPolicy | None:
        return self._policies.get(field_name)

    def is_known(self, field_name: str) -> bool:
        return field_name in self._policies

    def is_sensitive(self, field_name: str) -> bool:
        policy = self._policies.get(field_name)
        return policy is not None and policy.sensitive

    @property
    def tables(self) -> list[str]:
        return sorted(self._table_fields)

    def sensitive_fields(self) -> list[str]:
        return sorted(name for name, policy in self._policies.items() if policy.sensitive)

    def fields_for_table(self, table: str) -> list[str]:
        return [name for name in self._table_fields.get(table, []) if self._policies[name].sensitive]

    def should_encrypt(self, table: str, field_name: str) -> bool:
        return field_name in self.fields_for_table(table)

    def require_sensitive(self, fields: Iterable[str]) -> list[str]:
        # Reject migration targets up front instead of silently skipping unknown columns.
        resolved: list[str] = []
        for field_name in fields:
            if not self.is_sensitive(field_name):
                raise PolicyConfigurationError(f"Field '{field_name}' is not declared sensitive")
            if field_name not in resolved:
                resolved.append(field_name)
        if not resolved:
            raise PolicyConfigurationError("At least one sensitive field is required")
        return resolved

    def describe(self) -> dict[str, list[str]]:
        return {table: self.fields_for_table(table) for table in self.tables}


@lru_cache
def get_field_policy_registry() -> FieldPolicyRegistry:
    registry = FieldPolicyRegistry.from_json(get_settings().fieldvault_field_policies)
    logger.info("field_policy_loaded tables=%s", registry.tables)
    return registry
