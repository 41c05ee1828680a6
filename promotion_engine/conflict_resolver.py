"""
Conflict resolution between campaign and coupon candidates

Resolution runs in three phases:
1. Filter - drop candidates that are inactive, outside their window or
   already exhausted, recording why
2. Rank - priority descending, ties broken by creation time (configurable
   policy), then by input order
3. Greedy select - walk the ranking, honour exclusivity, compute effects on
   the running cart and reserve usage/budget through the ledger
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .effect_calculator import EffectCalculator, RunningCart
from .exceptions import InfrastructureError
from .ledger import (
    Reservation,
    ReservationOutcome,
    UsageClaim,
    UsageCounter,
    UsageLedger,
    campaign_key,
    check_claim,
    coupon_key,
    rule_key,
)
from .models import (
    AppliedCampaign,
    Campaign,
    CampaignRule,
    Coupon,
    ExclusionReason,
    MonetaryAdjustment,
    Money,
)
from .stores import EPOCH

EFFECT_DISCOUNT_TYPES = {
    'percentage_discount': 'percentage',
    'flat_discount': 'flat_amount',
    'free_delivery': 'free_delivery',
    'generate_coupon': 'generate_coupon',
    'loyalty_points': 'loyalty_points',
}


class Candidate(BaseModel):
    """A campaign rule or a validated coupon competing for the cart"""

    source: Literal['campaign', 'coupon']
    candidate_id: str
    name: str
    rule_id: str
    priority: int
    is_exclusive: bool
    created_at: Optional[datetime] = None
    sequence: int = 0
    effects: List[Any]
    campaign: Optional[Campaign] = None
    rule: Optional[CampaignRule] = None
    coupon: Optional[Coupon] = None

    @classmethod
    def from_campaign(cls, campaign: Campaign, rule: CampaignRule, sequence: int = 0) -> "Candidate":
        return cls(
            source='campaign',
            candidate_id=campaign.id,
            name=campaign.name,
            rule_id=rule.id,
            priority=campaign.priority,
            is_exclusive=campaign.is_exclusive or rule.is_exclusive,
            created_at=campaign.created_at,
            sequence=sequence,
            effects=list(rule.effects),
            campaign=campaign,
            rule=rule,
        )

    @classmethod
    def from_coupon(cls, coupon: Coupon, effects: List[Any], priority: int,
                    is_exclusive: bool, sequence: int = 0,
                    campaign: Optional[Campaign] = None) -> "Candidate":
        """``campaign`` is the campaign the coupon belongs to, if any"""
        return cls(
            source='coupon',
            candidate_id=coupon.campaign_id or coupon.id,
            name=f"Coupon: {coupon.code}",
            rule_id=coupon.id,
            priority=priority,
            is_exclusive=is_exclusive,
            created_at=coupon.created_at,
            sequence=sequence,
            effects=effects,
            campaign=campaign,
            coupon=coupon,
        )


class Exclusion(BaseModel):
    """A candidate that did not make it into the applied set"""

    campaign_id: str
    name: str = ""
    source: str = 'campaign'
    reason: ExclusionReason
    details: Dict[str, Any] = Field(default_factory=dict)


class ResolvedCandidate(BaseModel):
    """A candidate that was applied, with its adjustments and reservation"""

    candidate: Candidate
    adjustments: List[MonetaryAdjustment]
    reservation: Optional[Reservation] = None

    @property
    def amount(self) -> int:
        return sum(adj.amount for adj in self.adjustments)

    @property
    def items_amount(self) -> int:
        return sum(adj.items_amount for adj in self.adjustments)

    @property
    def delivery_amount(self) -> int:
        return sum(adj.delivery_amount for adj in self.adjustments)

    @property
    def loyalty_points(self) -> int:
        return sum(adj.loyalty_points for adj in self.adjustments)

    @property
    def coupon_intents(self) -> list:
        return [adj.coupon_intent for adj in self.adjustments if adj.coupon_intent is not None]

    def to_applied(self, currency: str) -> AppliedCampaign:
        candidate = self.candidate
        if candidate.coupon is not None:
            discount_type = candidate.coupon.discount_type
            discount_value = candidate.coupon.discount_value
        elif candidate.effects:
            first = candidate.effects[0]
            discount_type = EFFECT_DISCOUNT_TYPES[first.type]
            discount_value = first.value
        else:
            discount_type, discount_value = 'flat_amount', 0

        metadata = {
            'source': candidate.source,
            'isExclusive': candidate.is_exclusive,
            'itemsDiscount': self.items_amount,
            'deliveryDiscount': self.delivery_amount,
            'loyaltyPoints': self.loyalty_points,
        }
        if candidate.coupon is not None:
            metadata['couponCode'] = candidate.coupon.code

        return AppliedCampaign(
            campaign_id=candidate.candidate_id,
            campaign_name=candidate.name,
            rule_id=candidate.rule_id,
            discount_type=discount_type,
            discount_value=discount_value,
            applied_amount=Money(amount=self.amount, currency=currency),
            priority=candidate.priority,
            metadata=metadata,
        )


class Resolution(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    applied: List[ResolvedCandidate] = Field(default_factory=list)
    excluded: List[Exclusion] = Field(default_factory=list)
    running_cart: RunningCart

    @property
    def reservations(self) -> List[Reservation]:
        return [r.reservation for r in self.applied if r.reservation is not None]


class ConflictResolver:
    """
    Selects the winning, non-conflicting set of candidates
    """

    def __init__(self, effect_calculator: EffectCalculator, ledger: Optional[UsageLedger] = None,
                 tie_break_policy: str = "oldest_first"):
        """
        Initialize conflict resolver

        Args:
            effect_calculator: Calculator used for candidate amounts
            ledger: Usage/budget ledger; when None, limits are checked against
                    snapshot counters and nothing is reserved (preview)
            tie_break_policy: "oldest_first" or "newest_first" for equal priorities
        """
        self.logger = logger
        self.effect_calculator = effect_calculator
        self.ledger = ledger
        self.tie_break_policy = tie_break_policy

    def resolve(self, candidates: List[Candidate], running_cart: RunningCart,
                customer_id: str, now: datetime, currency: str) -> Resolution:
        """
        Resolve conflicts and compute the applied set

        Args:
            candidates: Matched campaign rules and validated coupons
            running_cart: Cart state to discount
            customer_id: Customer the usage is attributed to
            now: Evaluation time
            currency: Cart currency

        Returns:
            Resolution with applied candidates, exclusions and final cart state
        """
        resolution = Resolution(running_cart=running_cart)

        # Phase 1: filter
        eligible = []
        for candidate in candidates:
            reason = self._filter_reason(candidate, customer_id, now, currency)
            if reason is not None:
                resolution.excluded.append(self._exclusion(candidate, reason))
            else:
                eligible.append(candidate)

        # Phase 2: rank
        ranked = self.rank(eligible)

        # Phase 3: greedy select
        exclusive_applied: Optional[Candidate] = None
        for candidate in ranked:
            if exclusive_applied is not None:
                resolution.excluded.append(self._exclusion(
                    candidate, ExclusionReason.CONFLICT_RESOLVED,
                    blockedBy=exclusive_applied.candidate_id,
                ))
                continue

            if candidate.is_exclusive and resolution.applied:
                resolution.excluded.append(self._exclusion(
                    candidate, ExclusionReason.CONFLICT_RESOLVED,
                    blockedBy=[r.candidate.candidate_id for r in resolution.applied],
                ))
                continue

            adjustments, scratch = self.effect_calculator.apply_all(
                candidate.effects, resolution.running_cart, now
            )
            if not self._has_effect(adjustments):
                resolution.excluded.append(self._exclusion(candidate, ExclusionReason.NO_EFFECT))
                continue

            amount = sum(adj.amount for adj in adjustments)
            try:
                outcome = self._reserve(candidate, customer_id, amount)
            except InfrastructureError:
                self.release_all(resolution)
                raise
            if not outcome.ok:
                resolution.excluded.append(self._exclusion(candidate, outcome.reason, amount=amount))
                continue

            resolution.running_cart = scratch
            resolution.applied.append(ResolvedCandidate(
                candidate=candidate,
                adjustments=adjustments,
                reservation=outcome.reservation,
            ))
            self.logger.debug(
                f"Applied {candidate.source} {candidate.candidate_id} "
                f"(priority {candidate.priority}) for {amount}"
            )

            if candidate.is_exclusive:
                exclusive_applied = candidate

        return resolution

    def release_all(self, resolution: Resolution) -> None:
        """Compensate every reservation of a resolution that will not commit"""
        if self.ledger is None:
            return
        for reservation in resolution.reservations:
            try:
                self.ledger.release(reservation)
            except InfrastructureError as e:
                self.logger.error(f"Failed to release reservation {reservation.id}: {str(e)}")

    def rank(self, candidates: List[Candidate]) -> List[Candidate]:
        """Stable ordering: priority desc, creation time per policy, input order"""
        def sort_key(candidate: Candidate) -> Tuple[int, float, int]:
            created = (candidate.created_at or EPOCH).timestamp()
            if self.tie_break_policy == 'newest_first':
                created = -created
            return (-candidate.priority, created, candidate.sequence)

        return sorted(candidates, key=sort_key)

    def claims_for(self, candidate: Candidate, customer_id: str, amount: int) -> List[UsageClaim]:
        """Counters an application of the candidate increments"""
        claims = []
        if candidate.coupon is not None:
            coupon = candidate.coupon
            restrictions = coupon.user_restrictions
            claims.append(UsageClaim(
                key=coupon_key(coupon.code),
                customer_id=customer_id,
                amount=amount,
                max_usage=coupon.usage_limit,
                max_usage_per_user=restrictions.max_usage_per_user if restrictions else None,
                baseline_usage=coupon.usage_count,
            ))

        # A coupon redeemed under a campaign spends that campaign's usage and budget
        campaign = candidate.campaign
        if campaign is not None:
            claims.append(UsageClaim(
                key=campaign_key(campaign.id),
                customer_id=customer_id,
                amount=amount,
                max_usage=campaign.max_usage,
                max_usage_per_user=campaign.max_usage_per_user,
                budget=campaign.budget.amount if campaign.budget else None,
                baseline_usage=campaign.current_usage,
                baseline_spent=campaign.spent_budget.amount,
            ))
        if candidate.rule is not None and candidate.rule.max_applications is not None:
            claims.append(UsageClaim(
                key=rule_key(campaign.id, candidate.rule.id),
                customer_id=customer_id,
                max_usage=candidate.rule.max_applications,
            ))
        return claims

    def _filter_reason(self, candidate: Candidate, customer_id: str,
                       now: datetime, currency: str) -> Optional[ExclusionReason]:
        if candidate.coupon is not None:
            coupon = candidate.coupon
            if not coupon.is_active:
                return ExclusionReason.INACTIVE
            if now < coupon.valid_from:
                return ExclusionReason.NOT_YET_VALID
            if now > coupon.valid_until:
                return ExclusionReason.EXPIRED

        if candidate.campaign is not None:
            reason = self._campaign_reason(candidate.campaign, candidate.rule, now, currency)
            if reason is not None:
                return reason

        # A zero-amount claim tells whether usage limits are already exhausted
        for claim in self.claims_for(candidate, customer_id, 0):
            counter = self._counter(claim.key, claim.baseline_usage, claim.baseline_spent)
            user_usage = self.ledger.get_user_usage(claim.key, customer_id) if self.ledger else 0
            reason = check_claim(counter, user_usage, claim)
            if reason is not None:
                return reason
        return None

    def _campaign_reason(self, campaign: Campaign, rule: Optional[CampaignRule],
                         now: datetime, currency: str) -> Optional[ExclusionReason]:
        if not campaign.is_active or campaign.status != 'active':
            return ExclusionReason.INACTIVE
        if now < campaign.valid_from or (rule and rule.valid_from and now < rule.valid_from):
            return ExclusionReason.NOT_YET_VALID
        if now > campaign.valid_until or (rule and rule.valid_until and now > rule.valid_until):
            return ExclusionReason.EXPIRED
        if campaign.budget is not None:
            if campaign.budget.currency != currency:
                return ExclusionReason.CURRENCY_MISMATCH
            if self._counter(campaign_key(campaign.id), campaign.current_usage,
                             campaign.spent_budget.amount).spent >= campaign.budget.amount:
                return ExclusionReason.BUDGET_EXCEEDED
        return None

    def _reserve(self, candidate: Candidate, customer_id: str, amount: int) -> ReservationOutcome:
        claims = self.claims_for(candidate, customer_id, amount)
        if self.ledger is not None:
            return self.ledger.reserve(claims)

        # Preview: check against snapshot counters, reserve nothing
        for claim in claims:
            counter = UsageCounter(usage=claim.baseline_usage, spent=claim.baseline_spent)
            reason = check_claim(counter, 0, claim)
            if reason is not None:
                return ReservationOutcome(ok=False, reason=reason)
        return ReservationOutcome(ok=True)

    def _counter(self, key: str, baseline_usage: int, baseline_spent: int) -> UsageCounter:
        """Live counter when the ledger knows the key, else the snapshot values"""
        if self.ledger is not None:
            counter = self.ledger.get_counter(key)
            if counter is not None:
                return counter
        return UsageCounter(usage=baseline_usage, spent=baseline_spent)

    @staticmethod
    def _has_effect(adjustments: List[MonetaryAdjustment]) -> bool:
        return any(
            adj.amount > 0 or adj.coupon_intent is not None or adj.loyalty_points > 0
            for adj in adjustments
        )

    def _exclusion(self, candidate: Candidate, reason: ExclusionReason, **details) -> Exclusion:
        self.logger.debug(f"Excluded {candidate.source} {candidate.candidate_id}: {reason.value}")
        return Exclusion(
            campaign_id=candidate.candidate_id,
            name=candidate.name,
            source=candidate.source,
            reason=reason,
            details={'ruleId': candidate.rule_id, 'priority': candidate.priority, **details},
        )
