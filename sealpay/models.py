"""
SealPay SDK - Data Model
Content records, payment intents and the payment state machine.
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from .errors import IllegalTransitionError


class PaymentState(Enum):
    """Payment lifecycle of a piece of content."""
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class IntentStatus(Enum):
    """Lifecycle of a payment intent at the settlement backend."""
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Dict[PaymentState, FrozenSet[PaymentState]] = {
    PaymentState.UNPAID: frozenset({PaymentState.PENDING}),
    PaymentState.PENDING: frozenset({PaymentState.PAID, PaymentState.FAILED}),
    PaymentState.FAILED: frozenset({PaymentState.PENDING}),
    PaymentState.PAID: frozenset(),
}


def can_transition(current: PaymentState, target: PaymentState) -> bool:
    """Self-transitions are allowed as no-ops."""
    return current == target or target in ALLOWED_TRANSITIONS[current]


def transition(current: PaymentState, target: PaymentState) -> PaymentState:
    """
    Guarded state change.

    Raises:
        IllegalTransitionError: for moves outside the state machine,
            e.g. paid -> unpaid
    """
    if not can_transition(current, target):
        raise IllegalTransitionError(
            f"Illegal payment transition {current.value} -> {target.value}"
        )
    return target


def sources_for(target: PaymentState) -> FrozenSet[PaymentState]:
    """States from which `target` is reachable in one step."""
    return frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets)


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class WrappedKey:
    """Content key encrypted under the per-content key-encryption key."""
    wrapped: bytes
    wrap_nonce: bytes
    wrap_tag: bytes


@dataclass
class ContentRecord:
    """
    Metadata row for one sealed blob.

    Attributes:
        id: Hex SHA-256 of the sealed blob (ciphertext || tag)
        wrapped_key: Content key wrapped under the per-id KEK
        wrap_nonce: Nonce used for the key wrap
        wrap_tag: GCM tag of the key wrap
        content_nonce: Nonce the content was sealed with
        algorithm: Content AEAD algorithm tag
        size: Plaintext size in bytes
        fingerprint: Keyed plaintext digest used for duplicate detection
        payment_state: Current payment state
        created_at: ISO timestamp of creation
    """
    id: str
    wrapped_key: bytes
    wrap_nonce: bytes
    wrap_tag: bytes
    content_nonce: bytes
    algorithm: str
    size: int
    fingerprint: str
    payment_state: PaymentState = PaymentState.UNPAID
    created_at: str = field(default_factory=utcnow)

    @property
    def wrapped(self) -> WrappedKey:
        return WrappedKey(self.wrapped_key, self.wrap_nonce, self.wrap_tag)


@dataclass
class PaymentIntent:
    """
    A payment obligation registered at a settlement backend.

    Attributes:
        content_id: Content being paid for (one live intent per id)
        backend: Settlement backend kind that issued the intent
        external_ref: Invoice hash, transaction signature or token mint
        payer: Payer identity (wallet address), if the backend needs one
        payment_request: Payable request string (bolt11 invoice), if any
        mint_ref: Signature of the access-token mint issued after the
            invoice settled (invoice_mint backend only)
        status: Current intent status
    """
    content_id: str
    backend: str
    external_ref: str
    payer: Optional[str] = None
    payment_request: Optional[str] = None
    mint_ref: Optional[str] = None
    status: IntentStatus = IntentStatus.PENDING
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    @property
    def is_live(self) -> bool:
        return self.status == IntentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class Settlement:
    """
    Outcome of asking a settlement backend about an intent.

    mint_ref is set when the backend submitted an access-token mint that
    the caller must remember on the intent.
    """
    settled: bool
    failed: bool = False
    detail: str = ""
    mint_ref: Optional[str] = None


@dataclass(frozen=True)
class SealResult:
    id: str
    algorithm: str
    size: int
    created: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PaymentStatus:
    content_id: str
    payment_state: PaymentState
    intent: Optional[PaymentIntent] = None
    already_paid: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_id": self.content_id,
            "payment_state": self.payment_state.value,
            "intent_status": self.intent.status.value if self.intent else None,
            "intent": self.intent.to_dict() if self.intent else None,
            "already_paid": self.already_paid,
        }


@dataclass(frozen=True)
class ReleasedKey:
    content_id: str
    algorithm: str
    content_key: bytes
    nonce: bytes

    def __repr__(self) -> str:
        return f"ReleasedKey(content_id={self.content_id!r}, algorithm={self.algorithm!r})"
