"""
Database Schemas for the Marketplace

Each Pydantic model represents a collection in MongoDB.
Class name lowercased = collection name (e.g., SubOrder -> "suborder").
Ids are stored as ObjectId strings; enum fields are stored as their values.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, ClassVar, List, Literal, Optional, Tuple, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field


def new_id() -> str:
    return str(ObjectId())


class Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_default=True)

    id: str = Field(default_factory=new_id, alias="_id")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Embedded(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_default=True)


# ---------------------- Enums ----------------------

class ProductStatus(str, Enum):
    draft = "draft"
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class DiscountType(str, Enum):
    percentage = "percentage"
    fixed = "fixed"


class CouponScope(str, Enum):
    order = "order"
    product = "product"
    category = "category"


class PaymentMethod(str, Enum):
    cod = "COD"
    card = "CARD"
    wallet = "WALLET"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    refunded = "refunded"


class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    cancelled = "cancelled"
    refunded = "refunded"


class ItemStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"
    return_requested = "return_requested"
    returned = "returned"
    refunded = "refunded"


class CollectionStatus(str, Enum):
    pending = "pending"
    collected = "collected"
    refunded = "refunded"
    cancelled = "cancelled"


class EscrowStatus(str, Enum):
    held = "held"
    released = "released"
    refunded = "refunded"
    not_applicable = "n/a"


class PayoutStatus(str, Enum):
    not_eligible = "not_eligible"
    eligible = "eligible"
    queued = "queued"
    paid = "paid"


class ReturnStatus(str, Enum):
    requested = "requested"
    approved = "approved"
    rejected = "rejected"
    received = "received"
    refunded = "refunded"


class DisputeStatus(str, Enum):
    open = "open"
    in_review = "in_review"
    resolved_buyer = "resolved_buyer"
    resolved_seller = "resolved_seller"
    cancelled = "cancelled"


class PaymentRecordStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    failed = "failed"


# ---------------------- Catalog ----------------------

class Address(Embedded):
    REQUIRED_FIELDS: ClassVar[Tuple[str, ...]] = ("street", "city", "zip", "country", "phone")

    full_name: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None

    def missing_fields(self) -> List[str]:
        return [f for f in self.REQUIRED_FIELDS if not (getattr(self, f) or "").strip()]


class Seller(Document):
    store_name: str
    user: Optional[str] = None
    is_verified: bool = False
    commission_rate: Optional[float] = Field(None, ge=0, le=1)


class Product(Document):
    name: str
    price: float = Field(..., ge=0)
    quantity: int = 0
    in_stock: bool = True
    status: ProductStatus = ProductStatus.pending
    seller: Optional[str] = None
    category: Optional[str] = None
    is_taxable: bool = True
    tax_rate_percent: Optional[float] = None
    weight: Optional[float] = None  # kg
    image: Optional[str] = None


# ---------------------- Cart ----------------------

class CartItem(Embedded):
    id: str = Field(default_factory=new_id, alias="_id")
    product: str
    seller: str
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0)


class Cart(Document):
    user: str
    items: List[CartItem] = []
    coupon: Optional[str] = None
    applied_coupon_code: Optional[str] = None
    discount: float = 0

    @property
    def cart_total(self) -> float:
        return round(sum(i.price * i.quantity for i in self.items), 2)

    @property
    def final_total(self) -> float:
        return round(max(self.cart_total - self.discount, 0), 2)


# ---------------------- Coupons ----------------------

class AdminCreator(Embedded):
    kind: Literal["admin"] = "admin"
    id: Optional[str] = None


class SellerCreator(Embedded):
    kind: Literal["seller"] = "seller"
    id: str


CreatedBy = Annotated[Union[AdminCreator, SellerCreator], Field(discriminator="kind")]


class CouponUsage(Embedded):
    user: str
    used_at: Optional[datetime] = None


class Coupon(Document):
    code: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: float = Field(..., ge=0)
    sellers: List[str] = []
    applicable_products: List[str] = []
    applicable_categories: List[str] = []
    min_cart_value: float = 0
    max_discount: Optional[float] = None
    max_usage: int = 1
    used_count: int = 0
    max_usage_per_user: int = 1
    user_usage: List[CouponUsage] = []
    stackable: bool = False
    max_stack_per_order: int = 1
    expiry_date: Optional[datetime] = None
    is_active: bool = True
    created_by: CreatedBy = Field(default_factory=AdminCreator)

    @property
    def scope(self) -> CouponScope:
        if self.applicable_products:
            return CouponScope.product
        if self.applicable_categories:
            return CouponScope.category
        return CouponScope.order

    def usage_by(self, user_id: str) -> int:
        return sum(1 for u in self.user_usage if u.user == user_id)


# ---------------------- Orders ----------------------

class OrderItem(Embedded):
    id: str = Field(default_factory=new_id, alias="_id")
    product: str
    seller: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    discount: float = 0
    subtotal: float = 0
    tax_amount: float = 0
    shipping_fee: float = 0
    status: ItemStatus = ItemStatus.pending
    payment_collection_status: CollectionStatus = CollectionStatus.pending
    tracking_number: Optional[str] = None
    shipping_address: Optional[Address] = None
    applied_coupons: List[str] = []
    commission_rate: float = 0
    commission_amount: float = 0
    escrow_status: EscrowStatus = EscrowStatus.held
    payout_status: PayoutStatus = PayoutStatus.not_eligible

    @property
    def gross(self) -> float:
        return self.price * self.quantity


class Order(Document):
    user: str
    items: List[OrderItem]
    merchandise_subtotal: float = 0
    discounts: float = 0
    taxes: float = 0
    shipping_fee: float = 0
    total_amount: float = 0
    applied_coupons: List[str] = []
    payment_method: PaymentMethod = PaymentMethod.cod
    payment_status: PaymentStatus = PaymentStatus.pending
    order_status: OrderStatus = OrderStatus.pending
    shipping_address: Address
    tracking_numbers: List[str] = []
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    refund_reason: Optional[str] = None
    cart: Optional[str] = None
    currency: str = "INR"
    payment_order_id: Optional[str] = None

    def refresh_totals(self) -> "Order":
        """Derive the order-level money fields from the items. Called before every write."""
        self.merchandise_subtotal = round(sum(i.gross for i in self.items), 2)
        self.discounts = round(sum(i.discount for i in self.items), 2)
        self.taxes = round(sum(i.tax_amount for i in self.items), 2)
        self.shipping_fee = round(sum(i.shipping_fee for i in self.items), 2)
        self.total_amount = round(
            self.merchandise_subtotal + self.taxes + self.shipping_fee - self.discounts, 2
        )
        return self

    def find_item(self, item_id: str) -> Optional[OrderItem]:
        return next((i for i in self.items if i.id == item_id), None)


class SubOrderItem(Embedded):
    id: str = Field(default_factory=new_id, alias="_id")
    order_item_id: str
    product: str
    quantity: int = Field(..., ge=1)
    price: float
    discount: float = 0
    subtotal: float
    tax_amount: float = 0
    shipping_fee: float = 0
    status: ItemStatus = ItemStatus.pending
    tracking_number: Optional[str] = None


class SubOrder(Document):
    order: str
    seller: str
    items: List[SubOrderItem]
    merchandise_subtotal: float = 0
    taxes: float = 0
    shipping_fee: float = 0
    total_amount: float = 0
    escrow_status: EscrowStatus = EscrowStatus.held
    payout_status: PayoutStatus = PayoutStatus.not_eligible
    commission_rate: float = 0
    commission_amount: float = 0
    seller_earning: float = 0
    sub_order_status: OrderStatus = OrderStatus.pending

    def refresh_totals(self) -> "SubOrder":
        self.merchandise_subtotal = round(sum(i.subtotal for i in self.items), 2)
        self.taxes = round(sum(i.tax_amount for i in self.items), 2)
        self.shipping_fee = round(sum(i.shipping_fee for i in self.items), 2)
        self.total_amount = round(self.merchandise_subtotal + self.taxes + self.shipping_fee, 2)
        self.commission_amount = round(self.total_amount * self.commission_rate, 2)
        self.seller_earning = round(max(self.total_amount - self.commission_amount, 0), 2)
        return self

    def item_for(self, order_item_id: str) -> Optional[SubOrderItem]:
        return next((i for i in self.items if i.order_item_id == order_item_id), None)


# ---------------------- Returns, Disputes, Payments ----------------------

class ReturnRequest(Document):
    order: str
    sub_order: Optional[str] = None
    item_id: str
    buyer: str
    seller: str
    quantity: int = Field(..., ge=1)
    reason: str
    status: ReturnStatus = ReturnStatus.requested
    admin_note: Optional[str] = None
    refund_amount: float = 0


class Dispute(Document):
    order: str
    sub_order: Optional[str] = None
    item_id: Optional[str] = None
    opened_by: str
    against_seller: Optional[str] = None
    reason: str
    status: DisputeStatus = DisputeStatus.open
    resolution: Optional[str] = None


class PaymentRecord(Document):
    order: str
    user: str
    amount: float
    currency: str = "INR"
    provider: str = "razorpay"
    payment_order_id: Optional[str] = None
    payment_id: Optional[str] = None
    status: PaymentRecordStatus = PaymentRecordStatus.pending
    failure_reason: Optional[str] = None


class WalletTransaction(Embedded):
    type: Literal["credit", "refund"] = "refund"
    amount: float
    reference: Optional[str] = None
    created_at: Optional[datetime] = None
