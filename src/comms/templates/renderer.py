"""Template micro-language renderer.

Syntax, applied to every string field of a content block:

- ``{name}`` substitutes a variable.
- ``{name|filter}`` applies a transform: uppercase, lowercase, capitalize,
  date, datetime, currency.
- ``{name|plural:singular,plural}`` picks singular text when the numeric value
  is exactly 1 and plural text otherwise.
- ``{?name}...{/name}`` keeps the enclosed text only when the variable is truthy.

Unresolved placeholders are left verbatim so partially populated previews stay
legible. Rendering is a pure function of the template text, the variable bag
and the configured locale/currency.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any

from babel.dates import format_date, format_datetime
from babel.numbers import format_currency

from comms.templates.models import CallToAction, ChannelContent, CompiledChannel

_CONDITIONAL_RE = re.compile(r"\{\?(\w+)\}(.*?)\{/\1\}", re.DOTALL)
_PLACEHOLDER_RE = re.compile(r"\{(\w+)(?:\|([^{}]+))?\}")
_CONDITIONAL_OPEN_RE = re.compile(r"\{\?(\w+)\}")

_RENDERED_FIELDS = ("subject", "title", "body", "html", "preview", "image_url", "icon_url")


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time())
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    return None


def _to_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class TemplateRenderer:
    """Renders content blocks for a fixed deployment locale and currency."""

    def __init__(self, locale: str = "en_US", currency: str = "EUR") -> None:
        self._locale = locale
        self._currency = currency

    @property
    def locale(self) -> str:
        return self._locale

    def render_string(self, text: str, variables: dict[str, Any]) -> str:
        # Conditionals first so nested placeholders inside dropped blocks vanish.
        previous = None
        while previous != text:
            previous = text
            text = _CONDITIONAL_RE.sub(
                lambda m: m.group(2) if variables.get(m.group(1)) else "",
                text,
            )

        def _replace(match: re.Match[str]) -> str:
            name, filter_expr = match.group(1), match.group(2)
            if name not in variables:
                return match.group(0)
            value = variables[name]
            if filter_expr is None:
                return self._stringify(value)
            rendered = self._apply_filter(value, filter_expr.strip())
            return match.group(0) if rendered is None else rendered

        return _PLACEHOLDER_RE.sub(_replace, text)

    def render_content(self, content: ChannelContent, variables: dict[str, Any]) -> dict[str, Any]:
        """Render every string field of a content block into a plain dict."""
        rendered: dict[str, Any] = {}
        for field in _RENDERED_FIELDS:
            value = getattr(content, field)
            rendered[field] = self.render_string(value, variables) if value is not None else None
        rendered["cta"] = [self._render_cta(cta, variables) for cta in content.cta]
        rendered["channel_config"] = {
            key: self.render_string(value, variables) if isinstance(value, str) else value
            for key, value in content.channel_config.items()
        }
        return rendered

    def _render_cta(self, cta: CallToAction, variables: dict[str, Any]) -> CallToAction:
        return CallToAction(
            id=cta.id,
            text=self.render_string(cta.text, variables),
            url=self.render_string(cta.url, variables) if cta.url else None,
            deeplink=self.render_string(cta.deeplink, variables) if cta.deeplink else None,
            style=cta.style,
        )

    @staticmethod
    def _stringify(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, datetime):
            return value.isoformat()
        return str(value)

    def _apply_filter(self, value: Any, filter_expr: str) -> str | None:
        """Apply a filter; ``None`` means leave the placeholder verbatim."""
        if filter_expr.startswith("plural:"):
            forms = filter_expr[len("plural:"):].split(",", 1)
            if len(forms) != 2:
                return None
            count = _to_decimal(value)
            if count is None:
                return None
            return forms[0] if count == 1 else forms[1]

        if filter_expr == "uppercase":
            return str(value).upper()
        if filter_expr == "lowercase":
            return str(value).lower()
        if filter_expr == "capitalize":
            return str(value).capitalize()
        if filter_expr == "date":
            moment = _to_datetime(value)
            if moment is None:
                return None
            return format_date(moment.date(), format="medium", locale=self._locale)
        if filter_expr == "datetime":
            moment = _to_datetime(value)
            if moment is None:
                return None
            return format_datetime(moment, format="medium", tzinfo=moment.tzinfo, locale=self._locale)
        if filter_expr == "currency":
            amount = _to_decimal(value)
            if amount is None:
                return None
            return format_currency(amount, self._currency, locale=self._locale)
        return self._stringify(value)


def compile_content(content: ChannelContent) -> CompiledChannel:
    """Extract referenced and conditional variable names from a content block."""
    texts = [getattr(content, field) or "" for field in _RENDERED_FIELDS]
    for cta in content.cta:
        texts.extend([cta.text, cta.url or "", cta.deeplink or ""])
    texts.extend(v for v in content.channel_config.values() if isinstance(v, str))
    joined = "\n".join(texts)

    variables: list[str] = []
    for match in _PLACEHOLDER_RE.finditer(joined):
        if match.group(1) not in variables:
            variables.append(match.group(1))
    conditionals: list[str] = []
    for match in _CONDITIONAL_OPEN_RE.finditer(joined):
        if match.group(1) not in conditionals:
            conditionals.append(match.group(1))

    return CompiledChannel(
        variables=variables,
        conditional_variables=conditionals,
        has_conditionals=bool(conditionals),
        estimated_length=sum(len(getattr(content, f) or "") for f in ("subject", "title", "body")),
    )
