"""
Accounts

Registration, login, profile and the single address / payment method kept
on each user, plus the admin user listing. Passwords are only ever stored as
bcrypt hashes and never returned; the card security code is never returned
either.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import UploadFile
from pydantic import BaseModel, EmailStr
from pymongo.errors import DuplicateKeyError

import uploads
from auth import hash_password, issue_token, verify_password
from database import create_document, now, serialize_doc, to_object_id
from errors import AccessDenied, NotFound, ValidationFailed
from schemas import Address, PaymentMethod, User

logger = logging.getLogger(__name__)


# Auth models
class RegisterInput(BaseModel):
    name: str
    email: EmailStr
    phone: str
    national_id: str
    password: str
    admin: bool = False


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    national_id: Optional[str] = None
    password: Optional[str] = None
    confirm_password: Optional[str] = None
    admin: Optional[bool] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


def public_user(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """User as sent to clients: no password hash, no card security code."""
    if not user:
        return None
    out = serialize_doc(user)
    out.pop("password_hash", None)
    out["payment_method"] = public_payment_method(out.get("payment_method"))
    for order in out.get("orders") or []:
        order["payment_method"] = public_payment_method(order.get("payment_method"))
    return out


def public_payment_method(payment_method: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not payment_method:
        return None
    return {k: v for k, v in payment_method.items() if k != "cvv"}


def auth_envelope(user: Dict[str, Any], message: str = "Authentication successful") -> Dict[str, Any]:
    return {
        "message": message,
        "token": issue_token(user),
        "user_id": str(user["_id"]),
        "admin": bool(user.get("admin", False)),
        "user": {
            "id": str(user["_id"]),
            "name": user["name"],
            "email": user["email"],
            "admin": bool(user.get("admin", False)),
        },
    }


def _require_value(value: Optional[str], label: str) -> None:
    if value is None or not str(value).strip():
        raise ValidationFailed(f"The {label} is required")


def _load_user(db, user_id: str) -> Dict[str, Any]:
    oid = to_object_id(user_id)
    if oid is None:
        raise ValidationFailed("Invalid id")
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise NotFound("User not found")
    return user


def _is_self(requester: Dict[str, Any], user: Dict[str, Any]) -> bool:
    return requester["_id"] == user["_id"]


# Registration and login

def register(db, data: RegisterInput, admin: bool = False) -> Dict[str, Any]:
    for field in ("name", "phone", "national_id", "password"):
        _require_value(getattr(data, field), field.replace("_", " "))
    email = data.email.lower()
    if db["user"].find_one({"email": email}):
        raise ValidationFailed("Email already registered")
    if db["user"].find_one({"national_id": data.national_id}):
        raise ValidationFailed("National id already registered")

    user_model = User(
        name=data.name,
        email=email,
        phone=data.phone,
        national_id=data.national_id,
        password_hash=hash_password(data.password),
        admin=admin,
    )
    try:
        user_id = create_document(db, "user", user_model)
    except DuplicateKeyError:
        raise ValidationFailed("Email or national id already registered")
    user = db["user"].find_one({"_id": user_id})
    logger.info("User %s registered%s", user_id, " as admin" if admin else "")
    return auth_envelope(user, "Registration successful")


def login(db, data: LoginInput) -> Dict[str, Any]:
    user = db["user"].find_one({"email": data.email.lower()})
    if not user or not verify_password(data.password, user.get("password_hash", "")):
        raise ValidationFailed("Invalid email or password")
    return auth_envelope(user)


# Profile

def get_user(db, user_id: str, requester: Dict[str, Any]) -> Dict[str, Any]:
    user = _load_user(db, user_id)
    if not _is_self(requester, user) and not requester.get("admin"):
        raise AccessDenied()
    return public_user(user)


def edit_user(
    db,
    user_id: Optional[str],
    data: UserUpdate,
    image: Optional[UploadFile],
    requester: Dict[str, Any],
) -> Dict[str, Any]:
    """Edit a profile. Without a user id the requester edits themselves."""
    user = _load_user(db, user_id) if user_id else requester
    if not _is_self(requester, user) and not requester.get("admin"):
        raise AccessDenied()

    changes: Dict[str, Any] = {}
    if data.name:
        changes["name"] = data.name
    if data.phone:
        changes["phone"] = data.phone
    if data.email and data.email.lower() != user["email"]:
        email = data.email.lower()
        if db["user"].find_one({"email": email, "_id": {"$ne": user["_id"]}}):
            raise ValidationFailed("Email already in use")
        changes["email"] = email
    if data.national_id and data.national_id != user.get("national_id"):
        if db["user"].find_one({"national_id": data.national_id, "_id": {"$ne": user["_id"]}}):
            raise ValidationFailed("National id already in use")
        changes["national_id"] = data.national_id
    if data.admin is not None and requester.get("admin"):
        changes["admin"] = data.admin
    if data.password:
        if not data.confirm_password:
            raise ValidationFailed("Password confirmation is required")
        if data.password != data.confirm_password:
            raise ValidationFailed("Password and confirmation must match")
        changes["password_hash"] = hash_password(data.password)

    old_image = user.get("image")
    if image is not None:
        changes["image"] = uploads.save_upload(uploads.USER_IMAGE, image)

    changes["updated_at"] = now()
    try:
        db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        uploads.remove_asset(uploads.USER_IMAGE, changes.get("image"))
        raise ValidationFailed("Email or national id already in use")
    if image is not None and old_image:
        uploads.remove_asset(uploads.USER_IMAGE, old_image)
    return public_user(db["user"].find_one({"_id": user["_id"]}))


def change_password(db, user_id: str, data: PasswordChange, requester: Dict[str, Any]) -> None:
    _require_value(data.current_password, "current password")
    _require_value(data.new_password, "new password")
    user = _load_user(db, user_id)
    if not _is_self(requester, user):
        raise AccessDenied()
    if not verify_password(data.current_password, user.get("password_hash", "")):
        raise ValidationFailed("Current password is incorrect")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(data.new_password), "updated_at": now()}},
    )


# Address and payment method

def get_address(user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return user.get("address")


def update_address(db, user: Dict[str, Any], address: Address) -> Dict[str, Any]:
    doc = address.model_dump()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"address": doc, "updated_at": now()}})
    return doc


def get_payment_method(user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return public_payment_method(user.get("payment_method"))


def update_payment_method(db, user: Dict[str, Any], payment_method: PaymentMethod) -> Dict[str, Any]:
    doc = payment_method.model_dump()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"payment_method": doc, "updated_at": now()}})
    return public_payment_method(doc)


# Admin

def list_users(db, requester: Dict[str, Any]) -> List[Dict[str, Any]]:
    if not requester.get("admin"):
        raise AccessDenied()
    return [public_user(u) for u in db["user"].find({}).sort("created_at", -1)]


def delete_user(db, user_id: str, requester: Dict[str, Any]) -> None:
    if not requester.get("admin"):
        raise AccessDenied()
    user = _load_user(db, user_id)
    db["user"].delete_one({"_id": user["_id"]})
    uploads.remove_asset(uploads.USER_IMAGE, user.get("image"))
    logger.info("User %s deleted by admin %s", user["_id"], requester["_id"])
