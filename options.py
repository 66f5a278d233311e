"""
Variant and measurement option parsing.

Raw option values come from admin-edited product records and arrive in
several shapes: plain strings ("1L"), JSON-encoded strings
('{"label": "1L", "price": 120}'), mappings ({"label": "Red", "image_url":
..., "price": "99.5"}) or already-parsed ``Option`` objects. Everything is
normalized here, once, into ``Option``; nothing downstream looks at the raw
shapes again.

Parsing never raises. A malformed option is dropped (``None``) instead of
failing the whole list.
"""
import json
import math
from typing import Any, Iterable, List, Mapping, Optional

from schemas import Option


def coerce_price(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        price = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            price = float(value)
        except ValueError:
            return None
    else:
        return None
    return price if math.isfinite(price) else None


def _from_mapping(raw: Mapping) -> Optional[Option]:
    label = raw.get("label")
    if not isinstance(label, str) or not label.strip():
        return None
    image_url = raw.get("image_url", raw.get("imageRef"))
    if not isinstance(image_url, str) or not image_url:
        image_url = None
    return Option(label=label.strip(), image_url=image_url, price=coerce_price(raw.get("price")))


def _looks_like_json(text: str) -> bool:
    # heuristic only; a near-miss falls back to the raw text as the label
    return text[:1] in ("{", "[") and "label" in text


def parse_option(raw: Any) -> Optional[Option]:
    if raw is None:
        return None
    if isinstance(raw, Option):
        raw = raw.model_dump()
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        if _looks_like_json(text):
            try:
                decoded = json.loads(text)
            except ValueError:
                decoded = None
            if isinstance(decoded, Mapping):
                option = _from_mapping(decoded)
                if option is not None:
                    return option
        return Option(label=text)
    if isinstance(raw, Mapping):
        return _from_mapping(raw)
    return None


def parse_options(values: Any) -> List[Option]:
    if not isinstance(values, (list, tuple)):
        return []
    parsed = (parse_option(v) for v in values)
    return [o for o in parsed if o is not None]


def option_label(raw: Any) -> Optional[str]:
    """Bare label of any raw option form, or None."""
    option = parse_option(raw)
    return option.label if option else None


def find_option(options: Iterable[Option], label: Optional[str]) -> Optional[Option]:
    if label is None:
        return None
    wanted = label.strip()
    for option in options:
        if option.label == wanted:
            return option
    return None
