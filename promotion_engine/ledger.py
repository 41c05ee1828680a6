"""
Usage/Budget ledger

The only shared mutable state of the engine: usage counts and spent budget
per campaign, rule and coupon, plus per-customer usage. A reservation is an
all-or-nothing conditional increment of every counter it claims; a claim
that would overshoot a limit fails the whole reservation without retrying.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set, Tuple

from loguru import logger
from pydantic import BaseModel, Field

from .models import ExclusionReason


def campaign_key(campaign_id: str) -> str:
    return f"campaign:{campaign_id}"


def rule_key(campaign_id: str, rule_id: str) -> str:
    return f"rule:{campaign_id}:{rule_id}"


def coupon_key(code: str) -> str:
    return f"coupon:{code}"


class UsageClaim(BaseModel):
    """One counter a reservation wants to increment"""

    key: str
    customer_id: str
    amount: int = Field(default=0, ge=0)
    max_usage: Optional[int] = None
    max_usage_per_user: Optional[int] = None
    budget: Optional[int] = None
    # Counter values from the campaign/coupon snapshot, used when the
    # ledger sees the key for the first time
    baseline_usage: int = 0
    baseline_spent: int = 0


class Reservation(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    claims: List[UsageClaim]


class ReservationOutcome(BaseModel):
    ok: bool
    reason: Optional[ExclusionReason] = None
    reservation: Optional[Reservation] = None


class UsageCounter(BaseModel):
    usage: int = 0
    spent: int = 0


def check_claim(counter: UsageCounter, user_usage: int, claim: UsageClaim) -> Optional[ExclusionReason]:
    """Reason a claim cannot be granted against the given counter values"""
    if claim.max_usage is not None and counter.usage >= claim.max_usage:
        return ExclusionReason.USAGE_LIMIT_REACHED
    if claim.max_usage_per_user is not None and user_usage >= claim.max_usage_per_user:
        return ExclusionReason.PER_USER_LIMIT_REACHED
    if claim.budget is not None and counter.spent + claim.amount > claim.budget:
        return ExclusionReason.BUDGET_EXCEEDED
    return None


class UsageLedger(ABC):
    """Transactional counter store behind the conflict resolver"""

    @abstractmethod
    def reserve(self, claims: List[UsageClaim]) -> ReservationOutcome:
        """Atomically increment every claimed counter or none of them"""

    @abstractmethod
    def release(self, reservation: Reservation) -> None:
        """Compensate a reservation that will not be committed"""

    @abstractmethod
    def get_counter(self, key: str) -> Optional[UsageCounter]:
        """Current counter values, None when the key was never reserved"""

    @abstractmethod
    def get_user_usage(self, key: str, customer_id: str) -> int:
        """Number of reservations a customer holds on a key"""


class InMemoryUsageLedger(UsageLedger):
    """
    Process-local ledger; a single lock makes check-and-increment atomic
    """

    def __init__(self):
        self.logger = logger
        self._lock = threading.Lock()
        self._counters: Dict[str, UsageCounter] = {}
        self._user_usage: Dict[Tuple[str, str], int] = {}
        self._released: Set[str] = set()

    def seed_user_usage(self, key: str, customer_id: str, usage: int) -> None:
        """Load historical per-customer usage, e.g. from CampaignUsage rows"""
        with self._lock:
            self._user_usage[(key, customer_id)] = usage

    def reserve(self, claims: List[UsageClaim]) -> ReservationOutcome:
        with self._lock:
            for claim in claims:
                counter = self._counter_for(claim)
                user_usage = self._user_usage.get((claim.key, claim.customer_id), 0)
                reason = check_claim(counter, user_usage, claim)
                if reason is not None:
                    self.logger.debug(f"Reservation refused on {claim.key}: {reason.value}")
                    return ReservationOutcome(ok=False, reason=reason)

            for claim in claims:
                counter = self._counters[claim.key]
                counter.usage += 1
                counter.spent += claim.amount
                user_key = (claim.key, claim.customer_id)
                self._user_usage[user_key] = self._user_usage.get(user_key, 0) + 1

        return ReservationOutcome(ok=True, reservation=Reservation(claims=claims))

    def release(self, reservation: Reservation) -> None:
        with self._lock:
            if reservation.id in self._released:
                return
            self._released.add(reservation.id)

            for claim in reservation.claims:
                counter = self._counters.get(claim.key)
                if counter is None:
                    continue
                counter.usage = max(0, counter.usage - 1)
                counter.spent = max(0, counter.spent - claim.amount)
                user_key = (claim.key, claim.customer_id)
                self._user_usage[user_key] = max(0, self._user_usage.get(user_key, 0) - 1)

        self.logger.debug(f"Released reservation {reservation.id}")

    def get_counter(self, key: str) -> Optional[UsageCounter]:
        with self._lock:
            counter = self._counters.get(key)
            return counter.model_copy() if counter else None

    def get_user_usage(self, key: str, customer_id: str) -> int:
        with self._lock:
            return self._user_usage.get((key, customer_id), 0)

    def _counter_for(self, claim: UsageClaim) -> UsageCounter:
        counter = self._counters.get(claim.key)
        if counter is None:
            counter = UsageCounter(usage=claim.baseline_usage, spent=claim.baseline_spent)
            self._counters[claim.key] = counter
        return counter
