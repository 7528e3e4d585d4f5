import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ValidationError

import cart
import catalog
import database
import uploads
import users
from auth import resolve_token, token_from_header
from database import get_db
from errors import AccessDenied, ValidationFailed
from schemas import Address, PaymentMethod

logger = logging.getLogger("ferrari_store")


def setup_logging():
    """Configures the root logger once."""
    root = logging.getLogger()
    root.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s"))
        root.addHandler(handler)


setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
        logger.info("Connected to database %s", database.DATABASE_NAME)
    else:
        logger.warning("DATABASE_URL not set, database routes will fail")
    yield


app = FastAPI(title="Ferrari Store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

uploads.ensure_dirs()
app.mount("/public", StaticFiles(directory=uploads.UPLOAD_ROOT), name="public")


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# Dependencies to get the requesting user

def get_optional_user(authorization: Optional[str] = Header(default=None), db=Depends(get_db)):
    return resolve_token(db, token_from_header(authorization))


def get_current_user(user: Optional[dict] = Depends(get_optional_user)):
    if user is None:
        raise AccessDenied()
    return user


# Request bodies
class AddToCartInput(BaseModel):
    product_id: str
    quantity: int = 1


class CartQuantityInput(BaseModel):
    quantity: int


class RemoveImageInput(BaseModel):
    filename: Optional[str] = None


# Routes
@app.get("/")
def read_root():
    return {"message": "Ferrari Store API"}


@app.get("/api/health")
def health(db=Depends(get_db)):
    indexes = database.index_status(db)
    return {
        "status": "ok" if all(indexes.values()) else "degraded",
        "database": db.name,
        "indexes": indexes,
        "products": db["product"].count_documents({}),
        "users": db["user"].count_documents({}),
    }


# Users: auth
@app.post("/api/users/register")
def register(payload: users.RegisterInput, db=Depends(get_db)):
    # admin accounts are only created through the admin route
    return users.register(db, payload, admin=False)


@app.post("/api/users/login")
def login(payload: users.LoginInput, db=Depends(get_db)):
    return users.login(db, payload)


@app.get("/api/users/checkuser")
def check_user(current_user: Optional[dict] = Depends(get_optional_user)):
    return users.public_user(current_user)


@app.post("/api/users/admin/register")
def admin_register(payload: users.RegisterInput, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    catalog.require_admin(current_user)
    return users.register(db, payload, admin=payload.admin)


# Users: address and payment method
@app.get("/api/users/address")
def get_address(current_user: dict = Depends(get_current_user)):
    return {"address": users.get_address(current_user)}


@app.put("/api/users/address")
def update_address(payload: Address, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    address = users.update_address(db, current_user, payload)
    return {"message": "Address updated successfully", "address": address}


@app.get("/api/users/payment-method")
def get_payment_method(current_user: dict = Depends(get_current_user)):
    return {"payment_method": users.get_payment_method(current_user)}


@app.put("/api/users/payment-method")
def update_payment_method(payload: PaymentMethod, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    payment_method = users.update_payment_method(db, current_user, payload)
    return {"message": "Payment method updated successfully", "payment_method": payment_method}


# Cart
@app.get("/api/users/cart")
def get_cart(db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    return {"cart": cart.get_cart(db, current_user)}


@app.post("/api/users/cart")
def add_to_cart(item: AddToCartInput, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    view = cart.add_to_cart(db, current_user, item.product_id, item.quantity)
    return {"message": "Product added to cart", "cart": view}


@app.delete("/api/users/cart/clear")
def clear_cart(db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    cart.clear_cart(db, current_user)
    return {"message": "Cart cleared", "cart": {"items": [], "total": 0}}


@app.put("/api/users/cart/{item_id}")
def update_cart_item(item_id: str, payload: CartQuantityInput, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    view = cart.update_cart_item(db, current_user, item_id, payload.quantity)
    return {"message": "Cart updated successfully", "cart": view}


@app.delete("/api/users/cart/{item_id}")
def remove_from_cart(item_id: str, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    view = cart.remove_from_cart(db, current_user, item_id)
    return {"message": "Item removed from cart", "cart": view}


# Orders
@app.post("/api/users/orders", status_code=201)
def create_order(db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    order = cart.create_order(db, current_user)
    return {"message": "Order created successfully", "order": order}


@app.get("/api/users/orders")
def get_orders(db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    return {"orders": cart.get_orders(db, current_user)}


@app.get("/api/users/orders/{order_id}")
def get_order(order_id: str, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    return {"order": cart.get_order(db, current_user, order_id)}


# Users: profile and admin
@app.get("/api/users")
def list_users(db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    return {"users": users.list_users(db, current_user)}


@app.patch("/api/users/edit")
def edit_me(
    name: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    national_id: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    confirm_password: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    db=Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    try:
        data = users.UserUpdate(
            name=name,
            email=email or None,
            phone=phone,
            national_id=national_id,
            password=password,
            confirm_password=confirm_password,
        )
    except ValidationError:
        raise ValidationFailed("Invalid email")
    user = users.edit_user(db, None, data, image, current_user)
    return {"message": "User updated successfully", "user": user}


@app.get("/api/users/{user_id}")
def get_user(user_id: str, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    return {"user": users.get_user(db, user_id, current_user)}


@app.put("/api/users/{user_id}")
def edit_user(user_id: str, payload: users.UserUpdate, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    user = users.edit_user(db, user_id, payload, None, current_user)
    return {"message": "User updated successfully", "user": user}


@app.put("/api/users/{user_id}/change-password")
def change_password(user_id: str, payload: users.PasswordChange, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    users.change_password(db, user_id, payload, current_user)
    return {"message": "Password changed successfully"}


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    users.delete_user(db, user_id, current_user)
    return {"message": "User removed successfully"}


# Products
@app.get("/api/products")
def list_products(db=Depends(get_db)):
    return {"products": catalog.list_products(db)}


@app.get("/api/products/featured")
def list_featured(db=Depends(get_db)):
    return {"products": catalog.list_featured(db)}


@app.get("/api/products/type/{product_type}")
def list_by_type(product_type: str, db=Depends(get_db)):
    return {"products": catalog.list_by_type(db, product_type)}


@app.get("/api/products/search")
def search_products(q: Optional[str] = None, db=Depends(get_db)):
    return {"products": catalog.search_products(db, q)}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return {"product": catalog.get_product(db, product_id)}


@app.post("/api/products", status_code=201)
def create_product(
    name: Optional[str] = Form(None),
    price: Optional[float] = Form(None),
    description: Optional[str] = Form(None),
    product_type: Optional[str] = Form(None, alias="type"),
    featured: bool = Form(False),
    stock: int = Form(0),
    images: Optional[List[UploadFile]] = File(None),
    sound_file: Optional[UploadFile] = File(None),
    db=Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    fields = {
        "name": name,
        "price": price,
        "description": description,
        "type": product_type,
        "featured": featured,
        "stock": stock,
    }
    product = catalog.create_product(db, fields, images or [], sound_file, current_user)
    return {"message": "Product created successfully", "product": product}


@app.patch("/api/products/{product_id}")
def update_product(
    product_id: str,
    name: Optional[str] = Form(None),
    price: Optional[float] = Form(None),
    description: Optional[str] = Form(None),
    product_type: Optional[str] = Form(None, alias="type"),
    featured: Optional[bool] = Form(None),
    stock: Optional[int] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    sound_file: Optional[UploadFile] = File(None),
    db=Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    fields = {
        "name": name,
        "price": price,
        "description": description,
        "type": product_type,
        "featured": featured,
        "stock": stock,
    }
    message, product = catalog.update_product(db, product_id, fields, images or [], sound_file, current_user)
    return {"message": message, "product": product}


@app.patch("/api/products/{product_id}/remove-image")
def remove_image(product_id: str, payload: RemoveImageInput, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    product = catalog.remove_image(db, product_id, payload.filename, current_user)
    return {"message": "Image removed successfully", "product": product}


@app.delete("/api/products/{product_id}/remove-sound")
def remove_sound(product_id: str, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    product = catalog.remove_sound(db, product_id, current_user)
    return {"message": "Sound file removed successfully", "product": product}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, db=Depends(get_db), current_user: dict = Depends(get_current_user)):
    catalog.delete_product(db, product_id, current_user)
    return {"message": "Product removed successfully"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
