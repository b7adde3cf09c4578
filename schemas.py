"""
Database Schemas

MongoDB collection schemas and request payloads, defined with Pydantic.
Each document model represents a collection in the database; the model name
lowercased is the collection name (CustomDesign -> "customdesign").
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from utils import naive_utc, utcnow

AGE_RANGES = (
    "0-6 Months", "6-12 Months",
    "1-2 Years", "2-3 Years", "3-4 Years", "4-5 Years", "5-6 Years",
    "6-7 Years", "7-8 Years", "8-10 Years", "10-12 Years",
    "12-14 Years", "14-16 Years",
)
AgeRange = Literal[
    "0-6 Months", "6-12 Months",
    "1-2 Years", "2-3 Years", "3-4 Years", "4-5 Years", "5-6 Years",
    "6-7 Years", "7-8 Years", "8-10 Years", "10-12 Years",
    "12-14 Years", "14-16 Years",
]

ORDER_STATUSES = (
    "pending", "confirmed", "processing", "shipped", "out_for_delivery",
    "delivered", "cancelled", "returned", "refunded",
)
OrderStatus = Literal[
    "pending", "confirmed", "processing", "shipped", "out_for_delivery",
    "delivered", "cancelled", "returned", "refunded",
]
PaymentMethod = Literal["easypaisa", "jazzcash", "bank_transfer"]
DesignStatus = Literal[
    "pending", "reviewing", "quoted", "accepted", "in_production",
    "completed", "cancelled", "rejected",
]
ProductType = Literal["dress", "shirt", "pants", "outfit", "accessories", "other"]


class Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# Embedded values

class LocalizedText(BaseModel):
    en: str
    ur: Optional[str] = None


class OptionalLocalizedText(BaseModel):
    en: Optional[str] = None
    ur: Optional[str] = None


class Image(BaseModel):
    url: str
    public_id: Optional[str] = None
    alt: Optional[str] = None


class Color(BaseModel):
    name: str
    hex: Optional[str] = None


class AgePrice(BaseModel):
    age_range: AgeRange
    price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    stock: int = Field(0, ge=0)


class Address(BaseModel):
    title: str = Field(..., min_length=1)
    full_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    province: str = Field(..., min_length=1)
    postal_code: Optional[str] = None
    is_default: bool = False


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    province: str = Field(..., min_length=1)
    postal_code: Optional[str] = None
    country: str = "Pakistan"


class Screenshot(BaseModel):
    url: str
    public_id: Optional[str] = None


# Collections

class User(Document):
    name: str = Field(..., max_length=50, description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hashed password")
    phone: Optional[str] = None
    role: str = Field("customer", description="Role: customer | admin")
    addresses: List[dict] = Field(default_factory=list)
    wishlist: List[ObjectId] = Field(default_factory=list)
    is_verified: bool = False
    preferred_language: Literal["en", "ur"] = "en"
    last_login: Optional[datetime] = None


class Category(Document):
    name: LocalizedText
    slug: str
    description: Optional[OptionalLocalizedText] = None
    image: Optional[Image] = None
    icon: Optional[str] = None
    parent: Optional[ObjectId] = None
    is_active: bool = True
    sort_order: int = 0
    product_count: int = 0


class Product(Document):
    name: LocalizedText
    slug: str
    description: LocalizedText
    short_description: Optional[OptionalLocalizedText] = None
    price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    age_pricing: List[AgePrice] = Field(default_factory=list)
    images: List[Image] = Field(default_factory=list)
    category: Optional[ObjectId] = None
    colors: List[Color] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    made_to_order: bool = False
    sku: Optional[str] = None
    ratings: Dict[str, float] = Field(default_factory=lambda: {"average": 0, "count": 0})
    featured: bool = False
    is_new_arrival: bool = True
    is_best_seller: bool = False
    is_active: bool = True
    tags: List[str] = Field(default_factory=list)
    material: Optional[OptionalLocalizedText] = None
    care_instructions: Optional[OptionalLocalizedText] = None
    weight: Optional[float] = Field(None, ge=0, description="Grams")
    sold_count: int = 0
    view_count: int = 0


class Cart(Document):
    user: ObjectId
    items: List[dict] = Field(default_factory=list, description="[{id, product, quantity, age_range?, color?, price}]")
    coupon_code: Optional[str] = None
    discount: float = 0


class Order(Document):
    order_number: str
    user: ObjectId
    items: List[dict]
    subtotal: float = Field(..., ge=0)
    shipping_cost: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    coupon_code: Optional[str] = None
    total: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    payment_method: PaymentMethod
    payment_status: str = "pending_advance"
    advance_payment: dict
    final_payment: dict
    payment_details: dict = Field(default_factory=dict)
    order_weight: float = 0
    shipping_address: dict
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    shipping_carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    status_history: List[dict] = Field(default_factory=list)
    is_custom_order: bool = False
    custom_design: Optional[ObjectId] = None
    stock_restored: bool = False


class Coupon(Document):
    code: str
    description: Optional[OptionalLocalizedText] = None
    type: Literal["percentage", "fixed"]
    discount_value: float = Field(..., ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    min_order_amount: float = 0
    applicable_to: Literal["all", "categories", "products", "first_order"] = "all"
    categories: List[ObjectId] = Field(default_factory=list)
    products: List[ObjectId] = Field(default_factory=list)
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    usage_limit: Optional[int] = None
    usage_per_user: int = 1
    usage_count: int = 0
    used_by: List[dict] = Field(default_factory=list)


class Sale(Document):
    name: LocalizedText
    description: Optional[OptionalLocalizedText] = None
    type: Literal["percentage", "fixed", "buy_get"]
    discount_value: float = Field(..., ge=0)
    buy_quantity: Optional[int] = None
    get_quantity: Optional[int] = None
    max_discount: Optional[float] = Field(None, ge=0)
    min_order_amount: float = 0
    applicable_to: Literal["all", "categories", "products"] = "all"
    categories: List[ObjectId] = Field(default_factory=list)
    products: List[ObjectId] = Field(default_factory=list)
    excluded_products: List[ObjectId] = Field(default_factory=list)
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    banner_image: Optional[Image] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    priority: int = 0


class Review(Document):
    user: ObjectId
    product: ObjectId
    order: Optional[ObjectId] = None
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: str = Field(..., max_length=1000)
    images: List[Image] = Field(default_factory=list)
    is_verified_purchase: bool = False
    is_approved: bool = True
    helpful_count: int = 0
    response: Optional[dict] = None


class CustomDesign(Document):
    user: ObjectId
    design_number: str
    type: Literal["upload", "builder"] = "upload"
    uploaded_images: List[Image] = Field(default_factory=list)
    description: str
    product_type: ProductType = "dress"
    size: str
    quantity: int = Field(1, ge=1)
    preferred_colors: List[str] = Field(default_factory=list)
    additional_notes: Optional[str] = None
    reference_links: List[str] = Field(default_factory=list)
    status: DesignStatus = "pending"
    quoted_price: Optional[float] = None
    estimated_days: Optional[int] = None
    designer_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    conversation: List[dict] = Field(default_factory=list)
    order: Optional[ObjectId] = None
    customer_contact: dict = Field(default_factory=dict)


# Request payloads

class RegisterInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None


class LoginInput(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    phone: Optional[str] = None
    preferred_language: Optional[Literal["en", "ur"]] = None


class PasswordUpdate(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class ForgotPasswordInput(BaseModel):
    email: EmailStr


class ResetPasswordInput(BaseModel):
    password: str


class AddressUpdate(BaseModel):
    title: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    is_default: Optional[bool] = None


class CartAddInput(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    age_range: Optional[AgeRange] = None
    color: Optional[Color] = None


class CartUpdateInput(BaseModel):
    item_id: str
    quantity: int = Field(..., ge=1)


class CouponApplyInput(BaseModel):
    code: str = Field(..., min_length=1)


class OrderCreateInput(BaseModel):
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    notes: Optional[str] = None
    screenshot: Optional[Screenshot] = None


class PaymentProofInput(BaseModel):
    screenshot: Screenshot


class PaymentInitiateInput(BaseModel):
    order_id: str


class CustomDesignInput(BaseModel):
    description: str = Field(..., min_length=1)
    product_type: ProductType = "dress"
    size: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    whatsapp_number: str = Field(..., pattern=r"^[0-9+]{10,15}$")
    preferred_colors: Optional[Union[List[str], str]] = None
    fabric_preference: Optional[str] = None
    additional_notes: Optional[str] = None
    reference_links: List[str] = Field(default_factory=list)
    uploaded_images: List[Image] = Field(default_factory=list)


class DesignMessageInput(BaseModel):
    message: str = Field(..., min_length=1)
    attachments: List[Screenshot] = Field(default_factory=list)


class AcceptQuoteInput(BaseModel):
    shipping_address: ShippingAddress
    payment_method: PaymentMethod


class ReviewInput(BaseModel):
    product_id: str
    order_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: str = Field(..., min_length=1, max_length=1000)
    images: List[Image] = Field(default_factory=list)


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: Optional[str] = Field(None, min_length=1, max_length=1000)


# Admin payloads

class ProductInput(BaseModel):
    name: LocalizedText
    description: LocalizedText
    short_description: Optional[OptionalLocalizedText] = None
    price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    age_pricing: List[AgePrice] = Field(default_factory=list)
    images: List[Image] = Field(default_factory=list)
    category: Optional[str] = None
    colors: List[Color] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    made_to_order: bool = False
    sku: Optional[str] = None
    featured: bool = False
    is_new_arrival: bool = True
    is_best_seller: bool = False
    is_active: bool = True
    tags: List[str] = Field(default_factory=list)
    material: Optional[OptionalLocalizedText] = None
    care_instructions: Optional[OptionalLocalizedText] = None
    weight: Optional[float] = Field(None, ge=0)


class ProductUpdate(BaseModel):
    name: Optional[LocalizedText] = None
    description: Optional[LocalizedText] = None
    short_description: Optional[OptionalLocalizedText] = None
    price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    age_pricing: Optional[List[AgePrice]] = None
    images: Optional[List[Image]] = None
    category: Optional[str] = None
    colors: Optional[List[Color]] = None
    stock: Optional[int] = Field(None, ge=0)
    made_to_order: Optional[bool] = None
    sku: Optional[str] = None
    featured: Optional[bool] = None
    is_new_arrival: Optional[bool] = None
    is_best_seller: Optional[bool] = None
    is_active: Optional[bool] = None
    tags: Optional[List[str]] = None
    material: Optional[OptionalLocalizedText] = None
    care_instructions: Optional[OptionalLocalizedText] = None
    weight: Optional[float] = Field(None, ge=0)


class CategoryInput(BaseModel):
    name: LocalizedText
    description: Optional[OptionalLocalizedText] = None
    image: Optional[Image] = None
    icon: Optional[str] = None
    parent: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0


class CategoryUpdate(BaseModel):
    name: Optional[LocalizedText] = None
    description: Optional[OptionalLocalizedText] = None
    image: Optional[Image] = None
    icon: Optional[str] = None
    parent: Optional[str] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    shipping_carrier: Optional[str] = None
    admin_notes: Optional[str] = None


class PaymentRejectInput(BaseModel):
    reason: Optional[str] = None


class ShippingWeightInput(BaseModel):
    weight_in_kg: Optional[float] = Field(None, gt=0)


class DesignAdminUpdate(BaseModel):
    status: Optional[DesignStatus] = None
    quoted_price: Optional[float] = Field(None, gt=0)
    estimated_days: Optional[int] = Field(None, gt=0)
    designer_notes: Optional[str] = None
    admin_notes: Optional[str] = None


class _DatedInput(BaseModel):
    @field_validator("start_date", "end_date", check_fields=False)
    @classmethod
    def _to_naive_utc(cls, value):
        return naive_utc(value)


class CouponInput(_DatedInput):
    code: str = Field(..., min_length=1)
    description: Optional[OptionalLocalizedText] = None
    type: Literal["percentage", "fixed"]
    discount_value: float = Field(..., ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    min_order_amount: float = 0
    applicable_to: Literal["all", "categories", "products", "first_order"] = "all"
    categories: List[str] = Field(default_factory=list)
    products: List[str] = Field(default_factory=list)
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_per_user: int = Field(1, ge=1)


class CouponUpdate(_DatedInput):
    description: Optional[OptionalLocalizedText] = None
    type: Optional[Literal["percentage", "fixed"]] = None
    discount_value: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    min_order_amount: Optional[float] = None
    applicable_to: Optional[Literal["all", "categories", "products", "first_order"]] = None
    categories: Optional[List[str]] = None
    products: Optional[List[str]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_per_user: Optional[int] = Field(None, ge=1)


class SaleInput(_DatedInput):
    name: LocalizedText
    description: Optional[OptionalLocalizedText] = None
    type: Literal["percentage", "fixed", "buy_get"]
    discount_value: float = Field(..., ge=0)
    buy_quantity: Optional[int] = None
    get_quantity: Optional[int] = None
    max_discount: Optional[float] = Field(None, ge=0)
    min_order_amount: float = 0
    applicable_to: Literal["all", "categories", "products"] = "all"
    categories: List[str] = Field(default_factory=list)
    products: List[str] = Field(default_factory=list)
    excluded_products: List[str] = Field(default_factory=list)
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    banner_image: Optional[Image] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    priority: int = 0
    send_promotional_emails: bool = False


class SaleUpdate(_DatedInput):
    name: Optional[LocalizedText] = None
    description: Optional[OptionalLocalizedText] = None
    type: Optional[Literal["percentage", "fixed", "buy_get"]] = None
    discount_value: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    min_order_amount: Optional[float] = None
    applicable_to: Optional[Literal["all", "categories", "products"]] = None
    categories: Optional[List[str]] = None
    products: Optional[List[str]] = None
    excluded_products: Optional[List[str]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    banner_image: Optional[Image] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    priority: Optional[int] = None


class ReviewModerationInput(BaseModel):
    is_approved: Optional[bool] = None
    response: Optional[str] = None
