"""
Core Promotion Engine implementation
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pandas as pd
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from .audit import AuditSink, InMemoryAuditSink
from .condition_evaluator import ConditionEvaluator, EvaluationContext
from .config import PromotionEngineConfig, configure_logging, get_config
from .conflict_resolver import Candidate, ConflictResolver, Exclusion, Resolution
from .coupon_generator import CouponGenerator
from .coupon_pool import CouponPool
from .coupon_validator import CouponValidator, coupon_effects
from .effect_calculator import EffectCalculator, RunningCart
from .exceptions import InfrastructureError, ValidationError
from .ledger import InMemoryUsageLedger, UsageLedger
from .models import (
    ApplicationData,
    ApplyCampaignsRequest,
    ApplyCampaignsResponse,
    Campaign,
    CampaignAudit,
    CampaignRule,
    CampaignUsage,
    ConflictResolution,
    ExcludedCampaign,
    ExclusionReason,
    GeneratedCoupon,
    Money,
    PriorityAdjustment,
    audit_action_for,
)
from .stores import CampaignStore, CouponStore, InMemoryCouponStore, JsonCampaignStore

SUMMARY_COLUMNS = [
    'request_index', 'customer_id', 'cart_id', 'success', 'original_total',
    'discounted_total', 'total_discount', 'delivery_fee', 'loyalty_points',
    'applied_campaigns', 'excluded_campaigns', 'message'
]


def get_promotion_engine_version() -> str:
    """Get the current promotion engine version"""
    return "1.0.0"


class PromotionEngine:
    """
    Main Promotion Engine class for applying campaigns and coupons to carts
    """

    def __init__(self, config: Optional[PromotionEngineConfig] = None,
                 campaign_store: Optional[CampaignStore] = None,
                 coupon_store: Optional[CouponStore] = None,
                 ledger: Optional[UsageLedger] = None,
                 audit_sink: Optional[AuditSink] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 monotonic: Callable[[], float] = time.monotonic):
        """
        Initialize the Promotion Engine

        Args:
            config: Engine configuration, the global configuration when None
            campaign_store: Source of active campaigns, JSON files under
                            ``config.campaigns_dir`` when None
            coupon_store: Coupon lookup and insertion
            ledger: Usage/budget ledger
            audit_sink: Destination of usage and audit rows
            clock: Current time when the request carries no timestamp
            monotonic: Clock the request deadline is measured with

        Collaborators left as None are SQL-backed when ``config.database_url``
        is set and in-memory otherwise.
        """
        self.config = config or get_config()
        configure_logging(self.config)

        if self.config.database_url and (coupon_store is None or ledger is None or audit_sink is None):
            coupon_store, ledger, audit_sink = self._sql_collaborators(coupon_store, ledger, audit_sink)

        self.campaign_store = campaign_store or JsonCampaignStore(self.config.campaigns_dir)
        self.coupon_store = coupon_store or InMemoryCouponStore()
        self.ledger = ledger or InMemoryUsageLedger()
        self.audit_sink = audit_sink or InMemoryAuditSink()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.monotonic = monotonic

        self.condition_evaluator = ConditionEvaluator(
            timezone_name=self.config.timezone,
            product_match_mode=self.config.product_match_mode,
        )
        self.effect_calculator = EffectCalculator(self.config.default_coupon_expiry_days)
        self.coupon_validator = CouponValidator(self.coupon_store, self.ledger)
        self.conflict_resolver = ConflictResolver(
            self.effect_calculator, self.ledger, self.config.tie_break_policy
        )
        self.preview_resolver = ConflictResolver(
            self.effect_calculator, None, self.config.tie_break_policy
        )
        self.coupon_generator = CouponGenerator(
            self.coupon_store,
            code_length=self.config.coupon_code_length,
            prefix=self.config.coupon_code_prefix,
            max_attempts=self.config.coupon_code_max_attempts,
            batch_size=self.config.coupon_pool_batch_size,
        )
        self.coupon_pool = CouponPool(self.coupon_store, self.coupon_generator, self.ledger)

        logger.info(f"Promotion Engine {get_promotion_engine_version()} initialized")

    def _sql_collaborators(self, coupon_store, ledger, audit_sink):
        # Imported here so SQLAlchemy is only touched when a database is configured
        from .storage import (
            SqlAuditSink,
            SqlCouponStore,
            SqlUsageLedger,
            create_storage_engine,
            init_schema,
        )

        engine = create_storage_engine(self.config.database_url)
        init_schema(engine)
        logger.info("Using SQL storage for coupons, ledger and audit trail")
        return (
            coupon_store or SqlCouponStore(engine),
            ledger or SqlUsageLedger(engine),
            audit_sink or SqlAuditSink(engine),
        )

    def apply_campaigns(self, request: Union[ApplyCampaignsRequest, Dict[str, Any]],
                        commit: bool = True) -> ApplyCampaignsResponse:
        """
        Apply the best non-conflicting campaigns and coupons to a cart

        Args:
            request: Validated request or a raw camelCase payload
            commit: Reserve usage, issue coupons and write usage/audit rows;
                    False runs a preview that changes nothing

        Returns:
            ApplyCampaignsResponse; ``success`` is False when the request was
            aborted, in which case the original totals are returned

        Raises:
            ValidationError: If the request is malformed
        """
        started = self.monotonic()
        request = self.validate_request(request)
        customer = request.customer
        cart = request.cart
        currency = cart.total_amount.currency
        now = request.context.timestamp if request.context and request.context.timestamp else self.clock()

        logger.info(f"Processing cart {cart.id or '-'} for customer {customer.id} "
                     f"({'commit' if commit else 'preview'})")

        resolver = self.conflict_resolver if commit else self.preview_resolver
        try:
            campaigns = self.campaign_store.get_active_campaigns(now)
            context = EvaluationContext(customer=customer, cart=cart, now=now)
            candidates, excluded = self._campaign_candidates(campaigns, context)
            coupon_candidates, coupon_excluded, adjustments = self._coupon_candidates(
                request.coupon_codes, campaigns, context, sequence_start=len(candidates)
            )
            candidates.extend(coupon_candidates)
            excluded.extend(coupon_excluded)

            resolution = resolver.resolve(candidates, RunningCart(cart), customer.id, now, currency)
        except InfrastructureError as e:
            logger.error(f"Aborting application for customer {customer.id}: {str(e)}")
            return self._aborted(request, f"Campaign application aborted: {str(e)}")

        resolution.excluded = excluded + resolution.excluded

        elapsed_ms = (self.monotonic() - started) * 1000
        if elapsed_ms > self.config.request_deadline_ms:
            logger.error(f"Request deadline exceeded ({elapsed_ms:.0f} ms) for customer {customer.id}")
            resolver.release_all(resolution)
            return self._aborted(request, "Campaign application aborted: request deadline exceeded")

        generated: List[GeneratedCoupon] = []
        if commit:
            try:
                generated = self._commit(request, resolution, now)
            except InfrastructureError as e:
                logger.error(f"Commit failed for customer {customer.id}: {str(e)}")
                resolver.release_all(resolution)
                return self._aborted(request, f"Campaign application aborted: {str(e)}")

        response = self._build_response(request, resolution, generated, adjustments)
        logger.info(
            f"Applied {len(response.data.applied_campaigns)} campaigns, "
            f"excluded {len(response.data.conflict_resolution.excluded_campaigns)}, "
            f"total discount {response.data.total_discount.amount} {currency}"
        )
        return response

    def evaluate(self, request: Union[ApplyCampaignsRequest, Dict[str, Any]]) -> ApplyCampaignsResponse:
        """Preview the application without reserving or writing anything"""
        return self.apply_campaigns(request, commit=False)

    def process_payload(self, payload: Dict[str, Any], commit: bool = True) -> Dict[str, Any]:
        """
        Apply campaigns to a raw JSON payload

        Returns:
            Response dict in the camelCase wire format; malformed payloads
            produce ``{"success": False, "message": ..., "errors": [...]}``
        """
        try:
            response = self.apply_campaigns(payload, commit=commit)
        except ValidationError as e:
            logger.warning(f"Rejected payload: {str(e)}")
            return {'success': False, 'message': str(e), 'errors': e.errors}
        return response.to_wire()

    def evaluate_batch(self, requests: List[Union[ApplyCampaignsRequest, Dict[str, Any]]]) -> pd.DataFrame:
        """
        Preview many requests

        Returns:
            DataFrame with one summary row per request
        """
        rows = []
        for index, request in enumerate(requests):
            try:
                response = self.evaluate(request)
            except ValidationError as e:
                logger.warning(f"Request {index} is invalid: {str(e)}")
                rows.append({'request_index': index, 'success': False, 'message': str(e)})
                continue

            validated = self.validate_request(request)
            data = response.data
            rows.append({
                'request_index': index,
                'customer_id': validated.customer.id,
                'cart_id': validated.cart.id,
                'success': response.success,
                'original_total': data.original_total.amount,
                'discounted_total': data.discounted_total.amount,
                'total_discount': data.total_discount.amount,
                'delivery_fee': data.delivery_fee.amount,
                'loyalty_points': data.loyalty_points,
                'applied_campaigns': ','.join(a.campaign_id for a in data.applied_campaigns),
                'excluded_campaigns': ','.join(
                    f"{e.campaign_id}:{e.reason}" for e in data.conflict_resolution.excluded_campaigns
                ),
                'message': response.message,
            })

        logger.info(f"Evaluated batch of {len(requests)} requests")
        return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)

    def validate_request(self, request: Union[ApplyCampaignsRequest, Dict[str, Any]]) -> ApplyCampaignsRequest:
        """
        Validate a request and the consistency of its cart

        Raises:
            ValidationError: With field-level ``loc``/``msg``/``type`` errors
        """
        if not isinstance(request, ApplyCampaignsRequest):
            try:
                request = ApplyCampaignsRequest.model_validate(request)
            except PydanticValidationError as e:
                errors = [
                    {'loc': '.'.join(str(part) for part in error['loc']),
                     'msg': error['msg'],
                     'type': error['type']}
                    for error in e.errors()
                ]
                raise ValidationError("Invalid request", errors=errors)

        cart = request.cart
        currency = cart.total_amount.currency
        amounts = [('cart.subtotal', cart.subtotal), ('cart.deliveryFee', cart.delivery_fee)]
        for i, item in enumerate(cart.items):
            amounts.append((f'cart.items.{i}.unitPrice', item.unit_price))
            amounts.append((f'cart.items.{i}.totalPrice', item.total_price))

        mismatched = [
            {'loc': loc, 'msg': f"currency {money.currency} differs from cart currency {currency}",
             'type': 'currency_mismatch'}
            for loc, money in amounts if money.currency != currency
        ]
        if mismatched:
            raise ValidationError("Cart amounts use more than one currency", errors=mismatched)

        # Discounts are taken from the lines and the delivery fee, so their sum
        # must not exceed the total or applied amounts could outgrow totalDiscount
        items_total = sum(item.total_price.amount for item in cart.items) if cart.items else cart.subtotal.amount
        discountable = items_total + cart.delivery_fee.amount
        if discountable > cart.total_amount.amount:
            raise ValidationError("Cart total is lower than its items plus delivery fee", errors=[{
                'loc': 'cart.totalAmount',
                'msg': f"total {cart.total_amount.amount} is lower than items plus delivery fee {discountable}",
                'type': 'inconsistent_total',
            }])

        if cart.subtotal.amount + cart.delivery_fee.amount != cart.total_amount.amount:
            logger.warning(f"Cart {cart.id or '-'} total does not equal subtotal plus delivery fee")
        if cart.items and items_total != cart.subtotal.amount:
            logger.warning(f"Cart {cart.id or '-'} subtotal does not equal the sum of its items")

        return request

    def _campaign_candidates(self, campaigns: List[Campaign],
                             context: EvaluationContext) -> Tuple[List[Candidate], List[Exclusion]]:
        candidates, excluded = [], []
        for campaign in campaigns:
            rule = self._best_rule(campaign, context)
            if rule is None:
                excluded.append(Exclusion(
                    campaign_id=campaign.id,
                    name=campaign.name,
                    reason=ExclusionReason.CONDITIONS_NOT_MET,
                ))
                continue
            candidates.append(Candidate.from_campaign(campaign, rule, sequence=len(candidates)))

        logger.debug(f"{len(candidates)} of {len(campaigns)} active campaigns matched")
        return candidates, excluded

    def _best_rule(self, campaign: Campaign, context: EvaluationContext) -> Optional[CampaignRule]:
        """Highest-priority matching rule; equal priorities keep rule order"""
        matching = [rule for rule in campaign.rules if self.condition_evaluator.evaluate_rule(rule, context)]
        if not matching:
            return None
        return sorted(matching, key=lambda rule: -rule.priority)[0]

    def _coupon_candidates(self, codes: List[str], campaigns: List[Campaign], context: EvaluationContext,
                           sequence_start: int) -> Tuple[List[Candidate], List[Exclusion], List[PriorityAdjustment]]:
        campaigns_by_id = {campaign.id: campaign for campaign in campaigns}
        candidates, excluded, adjustments = [], [], []

        seen = set()
        for raw_code in codes:
            code = raw_code.strip().upper()
            if not code or code in seen:
                continue
            seen.add(code)

            result = self.coupon_validator.validate(code, context.customer, context.cart, context.now)
            if isinstance(result, ExclusionReason):
                excluded.append(Exclusion(
                    campaign_id=code, name=f"Coupon: {code}", source='coupon', reason=result
                ))
                continue

            linked = None
            if result.campaign_id:
                linked = campaigns_by_id.get(result.campaign_id)
                if linked is None:
                    logger.debug(f"Coupon {code} belongs to campaign {result.campaign_id}, which is not live")
                    excluded.append(Exclusion(
                        campaign_id=code, name=f"Coupon: {code}", source='coupon',
                        reason=ExclusionReason.INACTIVE, details={'campaignId': result.campaign_id},
                    ))
                    continue

            priority = self.config.coupon_priority
            if linked is not None and linked.priority != priority:
                adjustments.append(PriorityAdjustment(
                    campaign_id=linked.id,
                    original_priority=priority,
                    adjusted_priority=linked.priority,
                ))
                priority = linked.priority

            candidates.append(Candidate.from_coupon(
                result,
                coupon_effects(result),
                priority=priority,
                is_exclusive=result.is_exclusive or not self.config.coupons_stack_with_campaigns,
                sequence=sequence_start + len(candidates),
                campaign=linked,
            ))

        return candidates, excluded, adjustments

    def _commit(self, request: ApplyCampaignsRequest, resolution: Resolution,
                now: datetime) -> List[GeneratedCoupon]:
        """
        Issue generated coupons, then append usage and audit rows in one write

        Coupons issued before a failure are deactivated again, so an aborted
        commit leaves no usage rows, audit rows or usable coupons behind.
        """
        customer_id = request.customer.id
        currency = request.cart.total_amount.currency
        context = request.context
        order_id = context.order_id if context else None
        session_id = context.session_id if context else None

        issued = []
        generated = []
        for resolved in resolution.applied:
            for intent in resolved.coupon_intents:
                try:
                    coupon = self.coupon_generator.generate(
                        intent, customer_id, resolved.candidate.candidate_id, now
                    )
                except InfrastructureError:
                    self._revoke(issued)
                    raise
                issued.append(coupon.code)
                generated.append(GeneratedCoupon(
                    code=coupon.code,
                    discount_type=coupon.discount_type,
                    discount_value=coupon.discount_value,
                    valid_until=coupon.valid_until,
                ))

        usage_rows = [
            CampaignUsage(
                id=str(uuid.uuid4()),
                campaign_id=resolved.candidate.candidate_id,
                coupon_code=resolved.candidate.coupon.code if resolved.candidate.coupon else None,
                customer_id=customer_id,
                order_id=order_id,
                discount_amount=Money(amount=resolved.amount, currency=currency),
                applied_at=now,
                metadata={
                    'ruleId': resolved.candidate.rule_id,
                    'loyaltyPoints': resolved.loyalty_points,
                    'sessionId': session_id,
                },
            )
            for resolved in resolution.applied
        ]

        audit_rows = [
            CampaignAudit(
                id=str(uuid.uuid4()),
                campaign_id=resolved.candidate.candidate_id,
                customer_id=customer_id,
                action='applied',
                details={
                    'source': resolved.candidate.source,
                    'ruleId': resolved.candidate.rule_id,
                    'amount': resolved.amount,
                    'orderId': order_id,
                    'sessionId': session_id,
                },
                timestamp=now,
            )
            for resolved in resolution.applied
        ]
        audit_rows.extend(
            CampaignAudit(
                id=str(uuid.uuid4()),
                campaign_id=exclusion.campaign_id,
                customer_id=customer_id,
                action=audit_action_for(exclusion.reason),
                details={
                    'source': exclusion.source,
                    'reason': exclusion.reason.value,
                    'orderId': order_id,
                    'sessionId': session_id,
                    **exclusion.details,
                },
                timestamp=now,
            )
            for exclusion in resolution.excluded
        )

        try:
            self.audit_sink.write(usage_rows, audit_rows)
        except InfrastructureError:
            self._revoke(issued)
            raise
        return generated

    def _revoke(self, codes: List[str]) -> None:
        """Deactivate coupons issued by a commit that did not complete"""
        if not codes:
            return
        try:
            self.coupon_store.deactivate(codes)
            logger.warning(f"Revoked {len(codes)} coupons issued by an aborted commit")
        except InfrastructureError as e:
            logger.error(f"Failed to revoke coupons {codes}: {str(e)}")

    def _build_response(self, request: ApplyCampaignsRequest, resolution: Resolution,
                        generated: List[GeneratedCoupon],
                        adjustments: List[PriorityAdjustment]) -> ApplyCampaignsResponse:
        cart = request.cart
        currency = cart.total_amount.currency
        original_total = cart.total_amount.amount
        total_discount = min(sum(resolved.amount for resolved in resolution.applied), original_total)
        applied = [resolved.to_applied(currency) for resolved in resolution.applied]

        data = ApplicationData(
            original_total=Money(amount=original_total, currency=currency),
            discounted_total=Money(amount=original_total - total_discount, currency=currency),
            total_discount=Money(amount=total_discount, currency=currency),
            delivery_fee=Money(amount=resolution.running_cart.delivery_fee, currency=currency),
            applied_campaigns=applied,
            generated_coupons=generated,
            loyalty_points=sum(resolved.loyalty_points for resolved in resolution.applied),
            conflict_resolution=ConflictResolution(
                excluded_campaigns=[
                    ExcludedCampaign(campaign_id=exclusion.campaign_id, reason=exclusion.reason.value)
                    for exclusion in resolution.excluded
                ],
                priority_adjustments=adjustments,
            ),
        )

        if applied:
            message = f"{len(applied)} campaign(s) applied"
        else:
            message = "No applicable campaigns"
        return ApplyCampaignsResponse(success=True, data=data, message=message)

    @staticmethod
    def _aborted(request: ApplyCampaignsRequest, message: str) -> ApplyCampaignsResponse:
        cart = request.cart
        currency = cart.total_amount.currency
        return ApplyCampaignsResponse(
            success=False,
            data=ApplicationData(
                original_total=cart.total_amount,
                discounted_total=cart.total_amount,
                total_discount=Money.zero(currency),
                delivery_fee=cart.delivery_fee,
            ),
            message=message,
        )
