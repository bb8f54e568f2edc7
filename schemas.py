"""
Database Schemas for the Tassel Group API (MongoDB)

Each Pydantic model represents a collection in MongoDB. Collection name is the
lowercase of the class name by convention (GiftOrder -> "giftorder"), except
PaymentTransaction which lives in "payment".

Field names keep the camelCase keys of the existing data set. References to
other documents are stored as ObjectId strings.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

PaymentMethod = Literal["card", "cash", "payfast", "manual", "bank_transfer"]
PaymentStatus = Literal["pending", "processing", "completed", "failed", "refunded", "manual"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]
BookingStatus = Literal["pending", "confirmed", "completed", "cancelled"]
GiftOrderStatus = Literal["pending", "confirmed", "completed", "scheduled", "delivered", "cancelled"]
PurchaseType = Literal["order", "booking", "gift"]
PaymentState = Literal["initiated", "notified", "completed", "failed", "cancelled"]

ORDER_STATUSES = OrderStatus.__args__
BOOKING_STATUSES = BookingStatus.__args__
GIFT_ORDER_STATUSES = GiftOrderStatus.__args__
PURCHASE_TYPES = PurchaseType.__args__


# Catalog
class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    category: Optional[str] = None
    image: Optional[str] = None
    price: float = Field(..., ge=0)
    stockQuantity: int = Field(0, ge=0)
    inStock: bool = True
    tags: List[str] = []
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


# Promotions
class Voucher(BaseModel):
    code: str = Field(..., min_length=1)
    discount: float = Field(..., ge=0)
    type: Literal["percentage", "fixed"]
    maxUses: int = Field(..., ge=1)
    used: int = Field(0, ge=0)
    validUntil: datetime
    isActive: bool = True
    assignedTo: Optional[str] = None
    description: str = ""
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


# Transactions
class OrderItem(BaseModel):
    product: str
    name: str = ""
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class Order(BaseModel):
    user: str
    items: List[OrderItem] = Field(..., min_length=1)
    total: float = Field(..., ge=0)
    discount: float = Field(0.0, ge=0)
    finalTotal: float = Field(..., ge=0)
    voucher: Optional[str] = None
    shippingAddress: str = "Not specified"
    paymentMethod: PaymentMethod = "card"
    paymentStatus: PaymentStatus = "pending"
    paymentReference: str = ""
    processedBy: Optional[str] = None
    status: OrderStatus = "pending"
    trackingNumber: str = ""
    createdAt: datetime
    updatedAt: datetime


class Booking(BaseModel):
    user: str
    service: str
    serviceName: str = ""
    staff: Optional[str] = None
    date: datetime
    time: str
    duration: str = ""
    specialRequests: str = ""
    price: float = Field(..., ge=0)
    status: BookingStatus = "pending"
    paymentStatus: PaymentStatus = "pending"
    paymentMethod: PaymentMethod = "card"
    paymentReference: str = ""
    createdAt: datetime
    updatedAt: datetime


class GiftOrder(BaseModel):
    user: str
    giftPackage: str
    packageName: str = ""
    recipientName: str = Field(..., min_length=1)
    recipientEmail: EmailStr
    message: str = ""
    deliveryDate: datetime
    price: float = Field(..., ge=0)
    assignedStaff: Optional[str] = None
    status: GiftOrderStatus = "pending"
    paymentStatus: PaymentStatus = "pending"
    paymentMethod: PaymentMethod = "card"
    paymentReference: str = ""
    createdAt: datetime
    updatedAt: datetime


class PaymentTransaction(BaseModel):
    """
    One Payfast payment attempt, keyed by merchant reference (stored as _id).
    Collection: payment
    """
    reference: str
    type: PurchaseType
    amount: float = Field(..., gt=0)
    user: str
    payload: Dict[str, Any] = {}
    status: PaymentState = "initiated"
    recordId: Optional[str] = None
    error: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime
