"""
Payload Transformer
===================

Shapes an event payload before delivery: template substitution, field
projection, field pruning, an optional custom script, and conversion into
the wire format (JSON, XML, form-encoded or custom).

Author: Platform Engineering Team
Version: 1.0.0
"""

from __future__ import annotations

import copy
import inspect
import json
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urlencode

import structlog

from .base import ConfigurationError, PayloadFormat, Subscription

logger = structlog.get_logger(__name__)

ScriptRunner = Callable[[Any, str], Union[Any, Awaitable[Any]]]

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")

CONTENT_TYPES = {
    PayloadFormat.JSON: "application/json",
    PayloadFormat.XML: "application/xml",
    PayloadFormat.FORM: "application/x-www-form-urlencoded",
    PayloadFormat.CUSTOM: "text/plain",
}

_MISSING = object()


@dataclass
class RenderedPayload:
    """Serialized request body."""

    body: bytes
    content_type: str
    format: PayloadFormat

    @property
    def size(self) -> int:
        return len(self.body)


# =============================================================================
# Template and field helpers
# =============================================================================


def apply_template(template: Any, context: Dict[str, Any]) -> Any:
    """
    Recursively substitute ``{{key}}`` placeholders using top-level context keys.

    Strings, lists and dicts are walked; other values are returned as is.
    Placeholders with no matching key (or a ``None`` value) stay literal.
    """
    if isinstance(template, str):
        def replace(match: re.Match) -> str:
            value = context.get(match.group(1)) if isinstance(context, dict) else None
            return match.group(0) if value is None else str(value)

        return PLACEHOLDER_PATTERN.sub(replace, template)
    if isinstance(template, list):
        return [apply_template(item, context) for item in template]
    if isinstance(template, dict):
        return {key: apply_template(value, context) for key, value in template.items()}
    return template


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Read a dot-path from nested dicts."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return default
    return current


def include_fields(data: Any, fields: List[str]) -> Dict[str, Any]:
    """Project the given dot-paths into a fresh object."""
    result: Dict[str, Any] = {}
    for path in fields:
        value = get_path(data, path, _MISSING)
        if value is _MISSING:
            continue
        parts = path.split(".")
        node = result
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = copy.deepcopy(value)
    return result


def exclude_fields(data: Any, fields: List[str]) -> Any:
    """Delete the given dot-paths from a deep copy of ``data``."""
    pruned = copy.deepcopy(data)
    for path in fields:
        parts = path.split(".")
        parent = get_path(pruned, ".".join(parts[:-1])) if len(parts) > 1 else pruned
        if isinstance(parent, dict):
            parent.pop(parts[-1], None)
    return pruned


# =============================================================================
# Format conversion
# =============================================================================


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_json(payload: Any) -> bytes:
    return json.dumps(payload, default=_json_default).encode("utf-8")


_TAG_INVALID = re.compile(r"[^A-Za-z0-9_.-]")


def _tag(name: Any) -> str:
    tag = _TAG_INVALID.sub("_", str(name)) or "_"
    if not (tag[0].isalpha() or tag[0] == "_"):
        tag = f"_{tag}"
    return tag


def _build_element(parent: ET.Element, value: Any) -> None:
    if isinstance(value, dict):
        for key, child in value.items():
            _build_element(ET.SubElement(parent, _tag(key)), child)
    elif isinstance(value, (list, tuple)):
        for child in value:
            _build_element(ET.SubElement(parent, "item"), child)
    elif value is None:
        return
    elif isinstance(value, bool):
        parent.text = "true" if value else "false"
    elif isinstance(value, datetime):
        parent.text = value.isoformat()
    else:
        parent.text = str(value)


def to_xml(payload: Any) -> bytes:
    """Render a payload as an XML document rooted at ``<payload>``."""
    root = ET.Element("payload")
    _build_element(root, payload)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def flatten(data: Any, prefix: str = "") -> List[Tuple[str, str]]:
    """Flatten nested dicts/lists into dot-keyed pairs."""
    if isinstance(data, dict):
        items = data.items()
    elif isinstance(data, (list, tuple)):
        items = enumerate(data)
    else:
        if data is None:
            return [(prefix, "")]
        if isinstance(data, bool):
            return [(prefix, "true" if data else "false")]
        if isinstance(data, datetime):
            return [(prefix, data.isoformat())]
        return [(prefix, str(data))]

    pairs: List[Tuple[str, str]] = []
    for key, value in items:
        name = f"{prefix}.{key}" if prefix else str(key)
        pairs.extend(flatten(value, name))
    return pairs


def to_form(payload: Any) -> bytes:
    """Render a payload as ``application/x-www-form-urlencoded``."""
    if not isinstance(payload, (dict, list, tuple)):
        payload = {"payload": payload}
    return urlencode(flatten(payload)).encode("utf-8")


# =============================================================================
# Transformer
# =============================================================================


class PayloadTransformer:
    """
    Applies a subscription's transformation config to an outbound payload.

    Steps, in order: template, include fields, exclude fields, custom script.
    ``render`` then serializes the result in the configured format.

    Usage:
        transformer = PayloadTransformer(script_runner=sandbox.run)
        shaped = await transformer.transform(subscription, payload)
        rendered = transformer.render(subscription, shaped)
    """

    def __init__(self, script_runner: Optional[ScriptRunner] = None):
        self.script_runner = script_runner

    async def transform(self, subscription: Subscription, payload: Any) -> Any:
        """Shape ``payload`` per ``subscription.transformation``."""
        config = subscription.transformation
        if not config.enabled:
            return payload

        transformed = payload

        if config.template:
            transformed = apply_template(config.template, payload if isinstance(payload, dict) else {})

        if config.include_fields:
            transformed = include_fields(transformed, config.include_fields)

        if config.exclude_fields:
            transformed = exclude_fields(transformed, config.exclude_fields)

        if config.custom_script.enabled and config.custom_script.script:
            transformed = await self._run_script(subscription, transformed)

        return transformed

    async def _run_script(self, subscription: Subscription, payload: Any) -> Any:
        if self.script_runner is None:
            logger.warning(
                "custom_script_skipped",
                subscription_id=subscription.id,
                reason="no script runner configured",
            )
            return payload

        try:
            result = self.script_runner(payload, subscription.transformation.custom_script.script)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            raise ConfigurationError(f"Custom script failed: {e}") from e
        return result

    def render(self, subscription: Subscription, payload: Any) -> RenderedPayload:
        """Serialize a (transformed) payload into request body bytes."""
        fmt = subscription.transformation.format
        if not subscription.transformation.enabled:
            fmt = PayloadFormat.JSON

        if fmt == PayloadFormat.XML:
            body = to_xml(payload)
        elif fmt == PayloadFormat.FORM:
            body = to_form(payload)
        elif fmt == PayloadFormat.CUSTOM:
            if isinstance(payload, bytes):
                body = payload
            elif isinstance(payload, str):
                body = payload.encode("utf-8")
            else:
                body = to_json(payload)
                return RenderedPayload(body, CONTENT_TYPES[PayloadFormat.JSON], fmt)
        else:
            body = to_json(payload)

        return RenderedPayload(body, CONTENT_TYPES[fmt], fmt)
