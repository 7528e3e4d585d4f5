"""
Product catalog

Admin CRUD over the `product` collection plus the public read/search
operations. Image and sound files live on disk (see uploads.py); the records
only keep their filenames, and file removal never blocks a record change.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import UploadFile
from pymongo.errors import DuplicateKeyError

import uploads
from database import create_document, get_documents, now, serialize_doc, to_object_id
from errors import AccessDenied, NotFound, ValidationFailed
from schemas import PRODUCT_TYPES, Product

logger = logging.getLogger(__name__)

HELMET = "helmet"
HELMET_SOUND_NOTE = "Sound file removed automatically (helmets have no engine sound)"


def require_admin(requester: Optional[Dict[str, Any]]) -> None:
    if not requester or not requester.get("admin"):
        raise AccessDenied()


def _product_id(product_id: str):
    oid = to_object_id(product_id)
    if oid is None:
        raise ValidationFailed("Invalid id")
    return oid


def _load(db, product_id: str) -> Dict[str, Any]:
    product = db["product"].find_one({"_id": _product_id(product_id)})
    if not product:
        raise NotFound("Product not found")
    return product


def _check_type(product_type: str) -> None:
    if product_type not in PRODUCT_TYPES:
        raise ValidationFailed("Invalid product type")


def _name_taken(db, name: str, exclude=None) -> bool:
    query: Dict[str, Any] = {"name": name}
    if exclude is not None:
        query["_id"] = {"$ne": exclude}
    return db["product"].find_one(query) is not None


def _check_numbers(price: Optional[float], stock: Optional[int]) -> None:
    if price is not None and price < 0:
        raise ValidationFailed("Price must be a positive value")
    if stock is not None and stock < 0:
        raise ValidationFailed("Stock cannot be negative")


# Reads

def list_products(db) -> List[Dict[str, Any]]:
    return [serialize_doc(p) for p in get_documents(db, "product", sort="-created_at")]


def list_featured(db) -> List[Dict[str, Any]]:
    return [serialize_doc(p) for p in get_documents(db, "product", {"featured": True}, sort="-created_at")]


def list_by_type(db, product_type: str) -> List[Dict[str, Any]]:
    _check_type(product_type)
    return [serialize_doc(p) for p in get_documents(db, "product", {"type": product_type}, sort="-created_at")]


def get_product(db, product_id: str) -> Dict[str, Any]:
    return serialize_doc(_load(db, product_id))


def search_products(db, q: Optional[str]) -> List[Dict[str, Any]]:
    if not q or not q.strip():
        raise ValidationFailed("Search term is required")
    pattern = re.escape(q.strip())
    query = {
        "$or": [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    }
    return [serialize_doc(p) for p in get_documents(db, "product", query, sort="-created_at")]


# Admin writes

def create_product(
    db,
    fields: Dict[str, Any],
    images: List[UploadFile],
    sound_file: Optional[UploadFile],
    requester: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    require_admin(requester)

    for field in ("name", "price", "description", "type"):
        value = fields.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationFailed(f"The {field} is required")
    _check_type(fields["type"])
    _check_numbers(fields["price"], fields.get("stock"))
    if _name_taken(db, fields["name"]):
        raise ValidationFailed("A product with this name already exists")
    if not images:
        raise ValidationFailed("At least one image is required")

    for upload in images:
        uploads.check_upload(uploads.PRODUCT_IMAGE, upload)
    keep_sound = sound_file is not None and fields["type"] != HELMET
    if keep_sound:
        uploads.check_upload(uploads.SOUND, sound_file)

    saved = [uploads.save_upload(uploads.PRODUCT_IMAGE, upload) for upload in images]
    sound_name = uploads.save_upload(uploads.SOUND, sound_file) if keep_sound else None

    try:
        product = Product(
            name=fields["name"],
            type=fields["type"],
            price=fields["price"],
            images=saved,
            description=fields["description"],
            featured=bool(fields.get("featured") or False),
            stock=fields.get("stock") or 0,
            sold=0,
            sound_file=sound_name,
        )
        product_id = create_document(db, "product", product)
    except DuplicateKeyError:
        _discard(saved, sound_name)
        raise ValidationFailed("A product with this name already exists")
    except Exception:
        _discard(saved, sound_name)
        raise

    logger.info("Product %s created (%s)", product_id, product.name)
    return serialize_doc(db["product"].find_one({"_id": product_id}))


def _discard(images: List[str], sound: Optional[str]) -> None:
    for filename in images:
        uploads.remove_asset(uploads.PRODUCT_IMAGE, filename)
    uploads.remove_asset(uploads.SOUND, sound)


def update_product(
    db,
    product_id: str,
    fields: Dict[str, Any],
    images: List[UploadFile],
    sound_file: Optional[UploadFile],
    requester: Optional[Dict[str, Any]],
):
    """Partial update. Returns (message, product).

    New images are appended. Switching to helmet drops the sound file; a sound
    upload on a helmet is ignored.
    """
    oid = _product_id(product_id)
    require_admin(requester)
    product = _load(db, product_id)

    changes: Dict[str, Any] = {}
    unset_sound = False
    old_sound = product.get("sound_file")

    name = fields.get("name")
    if name and name != product["name"]:
        if _name_taken(db, name, exclude=oid):
            raise ValidationFailed("A product with this name already exists")
        changes["name"] = name

    _check_numbers(fields.get("price"), fields.get("stock"))
    if fields.get("price") is not None:
        changes["price"] = fields["price"]
    if fields.get("description"):
        changes["description"] = fields["description"]
    if fields.get("featured") is not None:
        changes["featured"] = fields["featured"]
    if fields.get("stock") is not None:
        changes["stock"] = fields["stock"]

    new_type = fields.get("type") or product["type"]
    if fields.get("type"):
        _check_type(fields["type"])
        changes["type"] = fields["type"]
    switched_to_helmet = new_type == HELMET and product["type"] != HELMET and bool(old_sound)
    if new_type == HELMET and old_sound:
        unset_sound = True

    for upload in images:
        uploads.check_upload(uploads.PRODUCT_IMAGE, upload)
    accept_sound = sound_file is not None and new_type != HELMET
    if accept_sound:
        uploads.check_upload(uploads.SOUND, sound_file)

    added = [uploads.save_upload(uploads.PRODUCT_IMAGE, upload) for upload in images]
    new_sound = uploads.save_upload(uploads.SOUND, sound_file) if accept_sound else None
    if new_sound:
        changes["sound_file"] = new_sound

    update: Dict[str, Any] = {"$set": {**changes, "updated_at": now()}}
    if added:
        update["$push"] = {"images": {"$each": added}}
    if unset_sound:
        update["$set"]["sound_file"] = None

    try:
        db["product"].update_one({"_id": oid}, update)
    except DuplicateKeyError:
        _discard(added, new_sound)
        raise ValidationFailed("A product with this name already exists")
    except Exception:
        _discard(added, new_sound)
        raise

    if old_sound and (unset_sound or new_sound):
        uploads.remove_asset(uploads.SOUND, old_sound)

    message = "Product updated successfully"
    if switched_to_helmet:
        message += ". " + HELMET_SOUND_NOTE
    return message, serialize_doc(db["product"].find_one({"_id": oid}))


def remove_image(db, product_id: str, filename: Optional[str], requester: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    oid = _product_id(product_id)
    if not filename:
        raise ValidationFailed("The filename is required")
    require_admin(requester)
    product = _load(db, product_id)

    images = product.get("images", [])
    if filename not in images:
        raise NotFound("Image not found")
    if len(images) <= 1:
        raise ValidationFailed("The product must keep at least one image")

    db["product"].update_one({"_id": oid}, {"$pull": {"images": filename}, "$set": {"updated_at": now()}})
    uploads.remove_asset(uploads.PRODUCT_IMAGE, filename)
    return serialize_doc(db["product"].find_one({"_id": oid}))


def remove_sound(db, product_id: str, requester: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    oid = _product_id(product_id)
    require_admin(requester)
    product = _load(db, product_id)

    sound = product.get("sound_file")
    if not sound:
        raise NotFound("Product has no sound file")

    db["product"].update_one({"_id": oid}, {"$set": {"sound_file": None, "updated_at": now()}})
    uploads.remove_asset(uploads.SOUND, sound)
    return serialize_doc(db["product"].find_one({"_id": oid}))


def delete_product(db, product_id: str, requester: Optional[Dict[str, Any]]) -> None:
    """Delete a product, strip it from every cart, then drop its files.

    Orders keep their references; they render the line as unavailable.
    """
    oid = _product_id(product_id)
    require_admin(requester)
    product = _load(db, product_id)

    db["user"].update_many({"cart.product_id": oid}, {"$pull": {"cart": {"product_id": oid}}})
    db["product"].delete_one({"_id": oid})
    logger.info("Product %s deleted (%s)", oid, product.get("name"))

    for filename in product.get("images", []):
        uploads.remove_asset(uploads.PRODUCT_IMAGE, filename)
    uploads.remove_asset(uploads.SOUND, product.get("sound_file"))
