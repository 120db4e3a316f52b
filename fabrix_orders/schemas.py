"""
Pydantic schemas for request/response validation in the orders service.

These schemas define the structure of data for API requests and responses.
Order line items are a tagged union keyed by ``type``.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field
from typing_extensions import Annotated

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]


class OrderItemBase(BaseModel):
    """Fields shared by every line item."""
    product_id: Optional[str] = Field(default=None, description="Catalog product, None if since deleted")
    name: str = Field(..., min_length=1)
    price: Decimal = Field(..., ge=0, description="Price per unit")
    quantity: int = Field(..., gt=0, description="Quantity ordered")
    image_url: str = ""


class ClothingItem(OrderItemBase):
    """A garment, optionally customized with a logo."""
    type: Literal["clothing"] = "clothing"
    size: Optional[str] = None
    color: Optional[str] = None
    fabric: Optional[str] = None
    logo_url: Optional[str] = None
    logo_position: Optional[str] = None
    order_quantity: Optional[int] = Field(default=None, gt=0)


class FabricItem(OrderItemBase):
    """Fabric sold by length."""
    type: Literal["fabric"] = "fabric"
    fabric_type: Optional[str] = None
    length: Optional[Decimal] = Field(default=None, gt=0, description="Length in meters")
    fabric_style: Optional[str] = None


OrderItem = Annotated[Union[ClothingItem, FabricItem], Field(discriminator="type")]


class CustomerInfo(BaseModel):
    """Buyer contact details captured at checkout."""
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    company: Optional[str] = None


class ShippingAddress(BaseModel):
    address1: str = Field(..., min_length=1)
    address2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class PaymentBreakdown(BaseModel):
    """Monetary breakdown as claimed by the client; checked against server totals."""
    subtotal: Decimal = Field(..., ge=0)
    shipping: Decimal = Field(..., ge=0)
    tax: Decimal = Field(..., ge=0)
    total: Decimal = Field(..., ge=0)


class OrderCreate(BaseModel):
    """Schema for creating a new order."""
    items: List[OrderItem] = Field(default_factory=list, description="Order line items")
    customer: CustomerInfo
    shipping_address: ShippingAddress
    shipping_method: str = "standard"
    payment_method_id: Optional[str] = None
    payment: Optional[PaymentBreakdown] = None
    currency: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class StatusUpdate(BaseModel):
    """Schema for an administrative status change."""
    status: OrderStatus
    tracking_number: Optional[str] = None
    shipping_method: Optional[str] = None
    estimated_delivery: Optional[str] = None


class MarkPaid(BaseModel):
    """Schema for recording a payment confirmed outside the webhook flow."""
    transaction_id: str = Field(..., min_length=1)
    card_brand: Optional[str] = None
    last_four: Optional[str] = Field(default=None, pattern=r"^\d{4}$")


class ShippingInfo(ShippingAddress):
    method: str
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[str] = None


class PaymentInfo(BaseModel):
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal
    currency: str
    is_paid: bool
    paid_at: Optional[datetime] = None
    payment_method_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    transaction_id: Optional[str] = None
    card_brand: Optional[str] = None
    last_four: Optional[str] = None


class PublicPaymentInfo(BaseModel):
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal
    currency: str
    is_paid: bool
    paid_at: Optional[datetime] = None


class Order(BaseModel):
    """
    Schema for order responses.

    Attributes:
        id (str): Internal order identifier
        order_number (str): Human-facing order number
        user_id (int): Owner, None for guest orders
        items (List[OrderItem]): Order line items
        customer (CustomerInfo): Buyer snapshot
        shipping (ShippingInfo): Destination and dispatch details
        payment (PaymentInfo): Monetary breakdown and payment references
        status (str): Order status
        created_at (datetime): When the order was created
        updated_at (datetime): When the order last changed
    """
    id: str
    order_number: str
    user_id: Optional[int] = None
    items: List[OrderItem]
    customer: CustomerInfo
    shipping: ShippingInfo
    payment: PaymentInfo
    status: OrderStatus
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, order) -> "Order":
        return cls(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            items=order.items or [],
            customer=order.customer,
            shipping=_shipping_info(order),
            payment=PaymentInfo(
                subtotal=order.subtotal,
                shipping=order.shipping_cost,
                tax=order.tax,
                total=order.total,
                currency=order.currency,
                is_paid=order.is_paid,
                paid_at=order.paid_at,
                payment_method_id=order.payment_method_id,
                payment_intent_id=order.payment_intent_id,
                transaction_id=order.transaction_id,
                card_brand=order.card_brand,
                last_four=order.last_four,
            ),
            status=order.status,
            notes=order.notes,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class PublicOrder(BaseModel):
    """Order as exposed by public tracking: no contact details or payment references."""
    order_number: str
    items: List[OrderItem]
    customer_name: str
    shipping: ShippingInfo
    payment: PublicPaymentInfo
    status: OrderStatus
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, order) -> "PublicOrder":
        customer = order.customer or {}
        return cls(
            order_number=order.order_number,
            items=order.items or [],
            customer_name=f"{customer.get('first_name', '')} {customer.get('last_name', '')}".strip(),
            shipping=_shipping_info(order),
            payment=PublicPaymentInfo(
                subtotal=order.subtotal,
                shipping=order.shipping_cost,
                tax=order.tax,
                total=order.total,
                currency=order.currency,
                is_paid=order.is_paid,
                paid_at=order.paid_at,
            ),
            status=order.status,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


def _shipping_info(order) -> ShippingInfo:
    return ShippingInfo(
        **(order.shipping_address or {}),
        method=order.shipping_method,
        tracking_number=order.tracking_number,
        estimated_delivery=order.estimated_delivery,
    )


class OrderPage(BaseModel):
    orders: List[Order]
    page: int
    pages: int
    total: int


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (str): Order identifier
        event_type (str): Type of event
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        user_id (int): User who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentIntentCreate(BaseModel):
    order_id: str = Field(..., min_length=1)
    currency: Optional[str] = None


class PaymentIntentResponse(BaseModel):
    success: bool = True
    client_secret: str
    payment_intent_id: str
    order_id: str
    amount: int = Field(..., description="Amount in minor currency units")
    currency: str


class WebhookAck(BaseModel):
    received: bool = True
    event_id: Optional[str] = None
    outcome: Optional[str] = None


class DispatchSummary(BaseModel):
    sent: int
    failed: int


class UserBase(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr


class UserRegister(UserBase):
    """Schema for user registration with password."""
    password: str = Field(..., min_length=8, description="Password must be at least 8 characters")


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class User(UserBase):
    id: int
    role: str
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class AuthResponse(BaseModel):
    user: User
    access_token: str
    token_type: str = "bearer"


class ErrorResponse(BaseModel):
    success: bool = False
    statusCode: int
    message: str
    errors: Optional[List[Dict[str, Any]]] = None
    stack: Optional[str] = None
