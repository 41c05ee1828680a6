"""
Data models for the Promotion Engine

Wire models use camelCase aliases (``totalAmount``, ``validUntil``) and accept
snake_case attribute names as well. Every monetary amount is an integer in
minor currency units.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StrictInt, field_validator
from pydantic.alias_generators import to_camel


def _ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are read as UTC so every comparison is aware"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]

UserRole = Literal["customer", "seller", "courier", "admin"]
CustomerSegment = Literal["new", "regular", "vip", "premium"]
CampaignType = Literal[
    "percentage_discount", "flat_discount", "free_delivery", "loyalty_reward", "flash_sale", "first_order"
]
CampaignStatus = Literal["draft", "active", "paused", "expired", "completed"]
DiscountType = Literal["percentage", "flat_amount", "free_delivery"]
AppliedDiscountType = Literal["percentage", "flat_amount", "free_delivery", "generate_coupon", "loyalty_points"]
Operator = Literal[
    "equals", "not_equals", "greater_than", "less_than", "greater_equal",
    "less_equal", "in", "not_in", "contains", "between"
]
EffectTarget = Literal["cart_total", "delivery_fee", "specific_products", "category"]
AuditAction = Literal["applied", "excluded", "conflict_resolved", "budget_exceeded", "usage_limit_reached"]


class EngineModel(BaseModel):
    """Base model with the camelCase wire format"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready dict using wire (camelCase) names"""
        return self.model_dump(by_alias=True, mode="json")


class Money(EngineModel):
    """Integer amount in minor units plus ISO currency code"""

    amount: int = Field(ge=0, strict=True)
    currency: str = Field(default="TRY", min_length=3, max_length=3)

    @classmethod
    def zero(cls, currency: str = "TRY") -> "Money":
        return cls(amount=0, currency=currency)


class Coordinates(EngineModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class Location(EngineModel):
    city: str = Field(min_length=1)
    district: Optional[str] = None
    country: str = Field(default="TR", min_length=2, max_length=2)
    coordinates: Optional[Coordinates] = None


class Customer(EngineModel):
    id: str = Field(min_length=1)
    role: UserRole
    email: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[Location] = None
    registration_date: UtcDatetime
    total_orders: int = Field(default=0, ge=0)
    total_spent: Money = Field(default_factory=Money.zero)
    segment: CustomerSegment = "new"


class CartItem(EngineModel):
    product_id: str = Field(min_length=1)
    variant_id: Optional[str] = None
    quantity: int = Field(ge=1)
    unit_price: Money
    total_price: Money
    tags: List[str] = Field(default_factory=list)
    category_id: str = Field(min_length=1)
    category_name: Optional[str] = None


class Cart(EngineModel):
    id: Optional[str] = None
    customer_id: Optional[str] = None
    items: List[CartItem] = Field(default_factory=list)
    subtotal: Money
    delivery_fee: Money
    total_amount: Money
    location: Optional[Location] = None


# --- Rule DSL: conditions -------------------------------------------------

StringPayload = Union[str, List[str]]
IntegerPayload = Union[StrictInt, List[StrictInt]]


class GeoArea(EngineModel):
    """Circle used by ``location`` conditions on ``field = coordinates``"""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    radius_meters: int = Field(gt=0)


class UserRoleCondition(EngineModel):
    type: Literal["user_role"]
    operator: Operator
    value: StringPayload


class CustomerSegmentCondition(EngineModel):
    type: Literal["customer_segment"]
    operator: Operator
    value: StringPayload


class LocationCondition(EngineModel):
    type: Literal["location"]
    operator: Operator
    field: Literal["city", "district", "country", "coordinates"] = "city"
    value: Union[GeoArea, str, List[str]]


class TimeCondition(EngineModel):
    """
    ``instant`` compares ``now`` with an instant or an inclusive [start, end]
    pair. ``hour`` (0-23) and ``day_of_week`` (Sunday=0 .. Saturday=6) use the
    local time of the configured timezone.
    """

    type: Literal["time"]
    operator: Operator
    field: Literal["instant", "hour", "day_of_week"] = "instant"
    value: Union[StrictInt, List[StrictInt], UtcDatetime, List[UtcDatetime]]


class CartTotalCondition(EngineModel):
    type: Literal["cart_total"]
    operator: Operator
    value: IntegerPayload


class OrderCountCondition(EngineModel):
    type: Literal["order_count"]
    operator: Operator
    value: IntegerPayload


class ProductTagsCondition(EngineModel):
    type: Literal["product_tags"]
    operator: Operator
    value: StringPayload


class ProductCategoriesCondition(EngineModel):
    type: Literal["product_categories"]
    operator: Operator
    value: StringPayload


Condition = Annotated[
    Union[
        UserRoleCondition,
        CustomerSegmentCondition,
        LocationCondition,
        TimeCondition,
        CartTotalCondition,
        OrderCountCondition,
        ProductTagsCondition,
        ProductCategoriesCondition,
    ],
    Field(discriminator="type"),
]


# --- Rule DSL: effects ----------------------------------------------------

class EffectMetadata(EngineModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    max_discount_amount: Optional[int] = Field(default=None, ge=0, strict=True)
    discount_type: Optional[DiscountType] = None
    valid_days: Optional[int] = Field(default=None, ge=1)
    prefix: Optional[str] = None


class TargetedEffect(EngineModel):
    target: EffectTarget = "cart_total"
    product_ids: List[str] = Field(default_factory=list)
    category_ids: List[str] = Field(default_factory=list)
    metadata: EffectMetadata = Field(default_factory=EffectMetadata)


class PercentageDiscountEffect(TargetedEffect):
    type: Literal["percentage_discount"]
    value: int = Field(ge=0, le=100, strict=True)


class FlatDiscountEffect(TargetedEffect):
    type: Literal["flat_discount"]
    value: int = Field(ge=0, strict=True)


class FreeDeliveryEffect(EngineModel):
    type: Literal["free_delivery"]
    value: int = Field(default=0, ge=0, strict=True)
    metadata: EffectMetadata = Field(default_factory=EffectMetadata)


class GenerateCouponEffect(EngineModel):
    type: Literal["generate_coupon"]
    value: int = Field(ge=0, strict=True)
    metadata: EffectMetadata = Field(default_factory=EffectMetadata)


class LoyaltyPointsEffect(EngineModel):
    type: Literal["loyalty_points"]
    value: int = Field(ge=0, strict=True)
    metadata: EffectMetadata = Field(default_factory=EffectMetadata)


Effect = Annotated[
    Union[
        PercentageDiscountEffect,
        FlatDiscountEffect,
        FreeDeliveryEffect,
        GenerateCouponEffect,
        LoyaltyPointsEffect,
    ],
    Field(discriminator="type"),
]


# --- Campaigns and coupons ------------------------------------------------

class CampaignRule(EngineModel):
    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    conditions: List[Condition] = Field(default_factory=list)
    effects: List[Effect] = Field(default_factory=list)
    priority: int = Field(default=100, ge=1, le=1000)
    is_exclusive: bool = False
    max_applications: Optional[int] = Field(default=None, ge=1)
    valid_from: Optional[UtcDatetime] = None
    valid_until: Optional[UtcDatetime] = None


class Campaign(EngineModel):
    id: str = Field(min_length=1)
    name: str
    description: str = ""
    type: CampaignType = "percentage_discount"
    status: CampaignStatus = "draft"
    is_active: bool = True
    rules: List[CampaignRule] = Field(default_factory=list)
    valid_from: UtcDatetime
    valid_until: UtcDatetime
    budget: Optional[Money] = None
    spent_budget: Money = Field(default_factory=Money.zero)
    max_usage: Optional[int] = Field(default=None, ge=1)
    current_usage: int = Field(default=0, ge=0)
    max_usage_per_user: Optional[int] = Field(default=None, ge=1)
    priority: int = Field(default=100, ge=1, le=1000)
    is_exclusive: bool = False
    created_at: Optional[UtcDatetime] = None


class UserRestrictions(EngineModel):
    roles: Optional[List[UserRole]] = None
    segments: Optional[List[CustomerSegment]] = None
    cities: Optional[List[str]] = None
    max_usage_per_user: Optional[int] = Field(default=None, ge=1)


class Coupon(EngineModel):
    id: str = Field(min_length=1)
    code: str = Field(min_length=3, max_length=50)
    campaign_id: Optional[str] = None
    discount_type: DiscountType
    discount_value: int = Field(ge=0, strict=True)
    min_order_amount: Optional[Money] = None
    max_discount_amount: Optional[Money] = None
    usage_limit: int = Field(default=1, ge=1)
    usage_count: int = Field(default=0, ge=0)
    valid_from: UtcDatetime
    valid_until: UtcDatetime
    is_active: bool = True
    is_exclusive: bool = False
    applicable_products: Optional[List[str]] = None
    applicable_categories: Optional[List[str]] = None
    excluded_products: Optional[List[str]] = None
    excluded_categories: Optional[List[str]] = None
    user_restrictions: Optional[UserRestrictions] = None
    customer_id: Optional[str] = None
    # Campaign whose generate_coupon effect issued the coupon; unlike
    # campaign_id it does not tie redemptions to that campaign's limits
    issued_by: Optional[str] = None
    created_at: Optional[UtcDatetime] = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()


class CampaignUsage(EngineModel):
    """One row per committed application, never mutated"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    campaign_id: str
    coupon_code: Optional[str] = None
    customer_id: str
    order_id: Optional[str] = None
    discount_amount: Money
    applied_at: UtcDatetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CampaignAudit(EngineModel):
    """One row per decision, never mutated"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    campaign_id: str
    customer_id: Optional[str] = None
    action: AuditAction
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: UtcDatetime


class ExclusionReason(str, Enum):
    """Reason codes reported in ``excludedCampaigns``"""

    CONDITIONS_NOT_MET = "conditions_not_met"
    INACTIVE = "inactive"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    CURRENCY_MISMATCH = "currency_mismatch"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    PER_USER_LIMIT_REACHED = "per_user_limit_reached"
    BUDGET_EXCEEDED = "budget_exceeded"
    CONFLICT_RESOLVED = "conflict_resolved"
    NO_EFFECT = "no_effect"
    NOT_FOUND = "not_found"
    CUSTOMER_NOT_ALLOWED = "customer_not_allowed"
    ROLE_NOT_ALLOWED = "role_not_allowed"
    SEGMENT_NOT_ALLOWED = "segment_not_allowed"
    CITY_NOT_ALLOWED = "city_not_allowed"
    MIN_ORDER_NOT_MET = "min_order_not_met"
    NO_APPLICABLE_ITEMS = "no_applicable_items"
    EXCLUDED_PRODUCT_IN_CART = "excluded_product_in_cart"


def audit_action_for(reason: ExclusionReason) -> str:
    """Map an exclusion reason onto the audit action it is recorded under"""
    if reason in (ExclusionReason.USAGE_LIMIT_REACHED, ExclusionReason.PER_USER_LIMIT_REACHED):
        return "usage_limit_reached"
    if reason == ExclusionReason.BUDGET_EXCEEDED:
        return "budget_exceeded"
    if reason == ExclusionReason.CONFLICT_RESOLVED:
        return "conflict_resolved"
    return "excluded"


# --- Effect results -------------------------------------------------------

class CouponIntent(EngineModel):
    """A coupon to be issued to the customer once the application commits"""

    discount_type: DiscountType
    discount_value: int
    valid_until: UtcDatetime
    prefix: Optional[str] = None


class CouponPoolTemplate(EngineModel):
    """Shape of the coupons generated into a campaign pool"""

    discount_type: DiscountType
    discount_value: int = Field(ge=0, strict=True)
    valid_days: int = Field(default=30, ge=1)
    usage_limit: int = Field(default=1, ge=1)
    prefix: Optional[str] = None


class CouponPoolStats(EngineModel):
    campaign_id: str
    total_coupons: int = 0
    used_coupons: int = 0
    available_coupons: int = 0
    expired_coupons: int = 0


class MonetaryAdjustment(EngineModel):
    """Result of applying one effect to the running cart"""

    effect_type: str
    items_amount: int = 0
    delivery_amount: int = 0
    line_allocations: Dict[int, int] = Field(default_factory=dict)
    coupon_intent: Optional[CouponIntent] = None
    loyalty_points: int = 0

    @property
    def amount(self) -> int:
        return self.items_amount + self.delivery_amount


# --- Request / response contract ------------------------------------------

class RequestContext(EngineModel):
    timestamp: Optional[UtcDatetime] = None
    session_id: Optional[str] = None
    device_type: Optional[Literal["web", "mobile", "api"]] = None
    order_id: Optional[str] = None


class ApplyCampaignsRequest(EngineModel):
    customer: Customer
    cart: Cart
    coupon_codes: List[str] = Field(default_factory=list)
    context: Optional[RequestContext] = None


class AppliedCampaign(EngineModel):
    campaign_id: str
    campaign_name: str
    rule_id: str
    discount_type: AppliedDiscountType
    discount_value: int
    applied_amount: Money
    priority: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GeneratedCoupon(EngineModel):
    code: str
    discount_type: DiscountType
    discount_value: int
    valid_until: UtcDatetime


class ExcludedCampaign(EngineModel):
    campaign_id: str
    reason: str


class PriorityAdjustment(EngineModel):
    campaign_id: str
    original_priority: int
    adjusted_priority: int


class ConflictResolution(EngineModel):
    excluded_campaigns: List[ExcludedCampaign] = Field(default_factory=list)
    priority_adjustments: List[PriorityAdjustment] = Field(default_factory=list)


class ApplicationData(EngineModel):
    original_total: Money
    discounted_total: Money
    total_discount: Money
    delivery_fee: Money
    applied_campaigns: List[AppliedCampaign] = Field(default_factory=list)
    generated_coupons: List[GeneratedCoupon] = Field(default_factory=list)
    loyalty_points: int = 0
    conflict_resolution: ConflictResolution = Field(default_factory=ConflictResolution)


class ApplyCampaignsResponse(EngineModel):
    success: bool
    data: ApplicationData
    message: str
