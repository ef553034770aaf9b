"""
Query template store.

Templates are read-only from the protocol's point of view: they are looked
up by id, used to validate bindings at submit time, and rendered by the
executor. SQL text refers to variables as ``{{name}}``, which render to
bound parameters.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from queryrelay.errors import InvalidRequest
from queryrelay.modules.storage import Store

logger = logging.getLogger("queryrelay.registry.templates")

TEMPLATES_COLLECTION = "queries"

# A placeholder may sit inside single quotes; the quotes go with it when rendered
_PLACEHOLDER = re.compile(r"(?P<quote>')?\{\{\s*(?P<name>[A-Za-z_][A-Za-z0-9_]*)\s*\}\}(?(quote)')")


@dataclass
class QueryTemplate:
    """A named, parameterized query."""

    id: str
    name: str
    sql_text: str
    declared_variables: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("id")
        return data

    @classmethod
    def from_dict(cls, template_id: str, data: Dict[str, Any]) -> "QueryTemplate":
        return cls(
            id=template_id,
            name=data.get("name", template_id),
            sql_text=data.get("sql_text", ""),
            declared_variables=list(data.get("declared_variables", [])),
        )


def placeholders(sql_text: str) -> List[str]:
    """Variable names referenced by a template, in first-use order."""
    seen: List[str] = []
    for match in _PLACEHOLDER.finditer(sql_text):
        if match.group("name") not in seen:
            seen.append(match.group("name"))
    return seen


def check_bindings(template: QueryTemplate, bindings: Dict[str, str]) -> None:
    """
    Verify every declared variable has a non-empty binding.

    Raises:
        InvalidRequest: Listing the missing variables
    """
    missing = [v for v in template.declared_variables if not (bindings.get(v) or "").strip()]
    if missing:
        raise InvalidRequest(
            f"Template {template.id} requires bindings for: {', '.join(missing)}"
        )


def render(template: QueryTemplate, bindings: Dict[str, str]) -> Tuple[str, List[str]]:
    """
    Turn the template into a parameterized statement.

    Each ``{{name}}`` becomes a ``?`` placeholder and its binding is returned
    as a positional parameter, so binding values never become SQL text.

    Returns:
        Tuple of (statement text, parameters in placeholder order)

    Raises:
        InvalidRequest: If a referenced variable has no binding
    """
    params: List[str] = []

    def substitute(match):
        name = match.group("name")
        if name not in bindings:
            raise InvalidRequest(f"Template {template.id} references unbound variable {name}")
        params.append(bindings[name])
        return "?"

    return _PLACEHOLDER.sub(substitute, template.sql_text), params


class TemplateStore(Protocol):
    """Protocol for template lookup."""

    async def get(self, template_id: str) -> Optional[QueryTemplate]:
        ...

    async def validate_bindings(self, template_id: str, bindings: Dict[str, str]) -> QueryTemplate:
        ...


class StoreTemplateRepository:
    """Template store kept in the shared store's ``queries`` collection."""

    def __init__(self, store: Store):
        self.store = store

    async def get(self, template_id: str) -> Optional[QueryTemplate]:
        document = await self.store.get(TEMPLATES_COLLECTION, template_id)
        if document is None:
            return None
        return QueryTemplate.from_dict(document.id, document.data)

    async def list(self) -> List[QueryTemplate]:
        return [QueryTemplate.from_dict(d.id, d.data) for d in await self.store.list(TEMPLATES_COLLECTION)]

    async def save(self, template: QueryTemplate) -> QueryTemplate:
        """
        Store a template, declaring any placeholder the caller left out.

        Args:
            template: Template to store

        Returns:
            The stored template
        """
        for name in placeholders(template.sql_text):
            if name not in template.declared_variables:
                template.declared_variables.append(name)
        await self.store.put(TEMPLATES_COLLECTION, template.id, template.to_dict())
        logger.info(f"Saved template {template.id} ({len(template.declared_variables)} variables)")
        return template

    async def validate_bindings(self, template_id: str, bindings: Dict[str, str]) -> QueryTemplate:
        """
        Resolve a template and validate caller bindings against it.

        Raises:
            InvalidRequest: Unknown template or missing bindings
        """
        template = await self.get(template_id)
        if template is None:
            raise InvalidRequest(f"Unknown template: {template_id}")
        check_bindings(template, bindings)
        return template
