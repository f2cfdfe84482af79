"""Purchase value extraction from classifier output.

The value is resolved by an ordered chain of strategies; the first one that
returns a plausible amount wins and later ones are not consulted:

1. ``structured_amount`` - numeric ``amount`` field of the model JSON.
2. ``amount_text`` - human readable field parsed as Brazilian currency.
3. ``raw_scan`` - regex scan of the whole model output, largest plausible hit.
4. ``secondary_model`` - one dedicated "number only" call to another model.
"""

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm import LLMError, LLMProvider, build_media_part

logger = get_logger("value_extraction")

MAX_PLAUSIBLE_AMOUNT = Decimal("1000000")
CENTS = Decimal("0.01")

_NUMBER_RE = re.compile(r"\d[\d.,]*")
_CURRENCY_RE = re.compile(
    r"R\$\s*\d[\d.,]*"
    r"|\b\d{1,3}(?:\.\d{3})+,\d{2}\b"
    r"|\b\d+,\d{2}\b"
)

VALUE_ONLY_PROMPT = (
    "Você recebe um comprovante de pagamento PIX. Responda APENAS com o valor "
    "da transação em reais, somente o número, no formato 1234.56. "
    "Se não encontrar o valor, responda 0."
)


def parse_brl_amount(text: object) -> Optional[Decimal]:
    """Parse a currency string in Brazilian (or plain) notation.

    ``"R$ 1.234,56"`` -> ``1234.56``; ``"R$ 97,00"`` -> ``97.00``;
    ``"R$97"`` -> ``97.00``. Returns ``None`` when nothing parses.
    """
    if text is None:
        return None
    raw = str(text).replace("\xa0", " ")
    match = _NUMBER_RE.search(raw)
    if not match:
        return None
    number = match.group(0).rstrip(".,")
    if not number:
        return None

    has_dot = "." in number
    has_comma = "," in number
    if has_dot and has_comma:
        if number.rfind(",") > number.rfind("."):
            number = number.replace(".", "").replace(",", ".")
        else:
            number = number.replace(",", "")
    elif has_comma:
        if re.search(r",\d{1,2}$", number) and number.count(",") == 1:
            number = number.replace(",", ".")
        else:
            number = number.replace(",", "")
    elif has_dot:
        # "1.234" and "1.234.567" are thousands in BR notation
        if number.count(".") > 1 or re.search(r"\.\d{3}$", number):
            number = number.replace(".", "")

    try:
        value = Decimal(number)
    except InvalidOperation:
        return None
    if value <= 0:
        return None
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def is_plausible_amount(value: Optional[Decimal]) -> bool:
    return value is not None and Decimal("0") < value < MAX_PLAUSIBLE_AMOUNT


@dataclass
class ValueContext:
    payload: Optional[dict]
    raw_output: str
    media_bytes: Optional[bytes] = None
    mime_type: Optional[str] = None
    llm: Optional[LLMProvider] = None
    secondary_model: Optional[str] = None
    timeout_seconds: Optional[float] = None


def from_structured_amount(ctx: ValueContext) -> Optional[Decimal]:
    if not isinstance(ctx.payload, dict):
        return None
    raw = ctx.payload.get("amount")
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        try:
            value = Decimal(str(raw)).quantize(CENTS, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            return None
    else:
        value = parse_brl_amount(raw)
    return value if is_plausible_amount(value) else None


def from_amount_text(ctx: ValueContext) -> Optional[Decimal]:
    if not isinstance(ctx.payload, dict):
        return None
    raw = ctx.payload.get("amount_text") or ctx.payload.get("valor")
    if not isinstance(raw, str) or not raw.strip():
        return None
    value = parse_brl_amount(raw)
    return value if is_plausible_amount(value) else None


def from_raw_scan(ctx: ValueContext) -> Optional[Decimal]:
    candidates = []
    for match in _CURRENCY_RE.finditer(ctx.raw_output or ""):
        value = parse_brl_amount(match.group(0))
        if is_plausible_amount(value):
            candidates.append(value)
    return max(candidates) if candidates else None


def from_secondary_model(ctx: ValueContext) -> Optional[Decimal]:
    if ctx.llm is None or not ctx.media_bytes or not ctx.mime_type:
        return None
    messages = [
        {"role": "system", "content": VALUE_ONLY_PROMPT},
        {
            "role": "user",
            "content": [
                build_media_part(ctx.media_bytes, ctx.mime_type),
                {"type": "text", "text": "Qual é o valor deste comprovante?"},
            ],
        },
    ]
    try:
        response = ctx.llm.generate(
            messages,
            model=ctx.secondary_model,
            temperature=0.0,
            max_tokens=20,
            timeout_seconds=ctx.timeout_seconds,
        )
    except (LLMError, httpx.HTTPError) as exc:
        logger.warning(
            "Secondary value extraction call failed",
            extra={"context": {"error": str(exc), "model": ctx.secondary_model}},
        )
        return None
    value = parse_brl_amount((response.content or "").strip())
    return value if is_plausible_amount(value) else None


VALUE_STRATEGIES: list[tuple[str, Callable[[ValueContext], Optional[Decimal]]]] = [
    ("structured_amount", from_structured_amount),
    ("amount_text", from_amount_text),
    ("raw_scan", from_raw_scan),
    ("secondary_model", from_secondary_model),
]


def extract_value(ctx: ValueContext) -> tuple[Optional[Decimal], Optional[str]]:
    """Run the strategy chain. Returns (amount, strategy name)."""
    for name, strategy in VALUE_STRATEGIES:
        value = strategy(ctx)
        if value is not None:
            return value, name
    return None, None
