"""
Database Schemas for the Storefront

Each Pydantic model represents a MongoDB collection. Collection name is the lowercase of the class name.
"""
from typing import Optional, List, Literal, Dict, Any
from pydantic import BaseModel, Field, EmailStr
from datetime import datetime

OrderStatus = Literal["pending", "paid", "shipped", "delivered"]
ShippingMethod = Literal["pickup_in_store", "home_delivery", "pickup_point"]
SizeType = Literal["letter", "number", "none"]

# Allowed status moves; anything else is rejected
ORDER_TRANSITIONS: Dict[str, set] = {
    "pending": {"paid"},
    "paid": {"shipped"},
    "shipped": {"delivered"},
    "delivered": set(),
}


# Users collection
class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password_hash: str = Field(..., min_length=10)
    role: Literal["admin", "customer"] = "customer"


# Products collection
class Product(BaseModel):
    name: str
    price: float = Field(..., ge=0)
    category: Optional[str] = None
    subCategory: Optional[str] = None
    image: Optional[str] = None
    additionalImages: List[str] = []
    stock: int = Field(default=0, ge=0)
    description: Optional[str] = None
    hasSize: bool = False
    sizeType: SizeType = "none"
    availableSizes: List[str] = []


# Carts collection (one per user)
class CartItem(BaseModel):
    product: str
    quantity: int = Field(default=1, ge=1)
    size: Optional[str] = None


class Cart(BaseModel):
    user: str
    items: List[CartItem] = []
    paid: bool = False
    version: int = 0


# Orders collection
class OrderItem(BaseModel):
    product: str
    productName: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None


class Order(BaseModel):
    user: str
    items: List[OrderItem]
    totalAmount: float = Field(..., ge=0)
    shippingMethod: ShippingMethod
    shippingDetails: Dict[str, Any] = {}
    status: OrderStatus = "pending"
    paidAt: Optional[datetime] = None
