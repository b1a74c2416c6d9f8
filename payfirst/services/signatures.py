"""Duitku request and callback signatures.

Every gateway operation hashes a different ordered concatenation of fields,
always followed by the merchant API key, and not all of them use the same
algorithm. The recipes live in ``SIGNATURE_RECIPES`` so the differences are
visible in one place.
"""
from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Tuple


class GatewayOperation(str, Enum):
    PAYMENT_METHODS = "payment_methods"
    CREATE_TRANSACTION = "create_transaction"
    TRANSACTION_STATUS = "transaction_status"
    CALLBACK = "callback"


@dataclass(frozen=True)
class SignatureRecipe:
    algorithm: str
    fields: Tuple[str, ...]


SIGNATURE_RECIPES: dict[GatewayOperation, SignatureRecipe] = {
    GatewayOperation.PAYMENT_METHODS: SignatureRecipe(
        "sha256", ("merchantCode", "amount", "datetime")
    ),
    GatewayOperation.CREATE_TRANSACTION: SignatureRecipe(
        "md5", ("merchantCode", "merchantOrderId", "paymentAmount")
    ),
    GatewayOperation.TRANSACTION_STATUS: SignatureRecipe(
        "md5", ("merchantCode", "merchantOrderId")
    ),
    GatewayOperation.CALLBACK: SignatureRecipe(
        "md5", ("merchantCode", "amount", "merchantOrderId")
    ),
}


def _format_value(value: Any) -> str:
    # 299000.0 and Decimal("299000.00") must hash like the integer the gateway sees
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return str(int(value))
    return str(value)


def signature_plaintext(op: GatewayOperation, fields: Mapping[str, Any], api_key: str) -> str:
    recipe = SIGNATURE_RECIPES[op]
    missing = [name for name in recipe.fields if fields.get(name) in (None, "")]
    if missing:
        raise ValueError(f"Missing signature fields for {op.value}: {', '.join(missing)}")
    return "".join(_format_value(fields[name]) for name in recipe.fields) + api_key


def sign(op: GatewayOperation, fields: Mapping[str, Any], api_key: str) -> str:
    """Return the lowercase hex digest the gateway expects for ``op``."""
    recipe = SIGNATURE_RECIPES[op]
    plaintext = signature_plaintext(op, fields, api_key)
    return hashlib.new(recipe.algorithm, plaintext.encode("utf-8")).hexdigest()


def verify(op: GatewayOperation, fields: Mapping[str, Any], api_key: str, candidate: str | None) -> bool:
    if not candidate:
        return False
    try:
        expected = sign(op, fields, api_key)
    except ValueError:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8"))
