"""
Cart and order workflow

The cart and the order history are embedded in the user document. Every cart
mutation reloads the cart, changes it and writes it back while holding a
lock for that user, so two requests from the same user cannot interleave
inside one process.

Checkout turns the cart into an immutable order: prices, the card (without
its security code) and the shipping address are copied into the order, stock
is taken from each product (never below zero) and the cart is emptied in the
same write that appends the order. If anything fails on the way, stock
already taken is given back.
"""

import logging
import threading
import weakref
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument

from database import now, serialize_doc, to_object_id
from errors import AccessDenied, NotFound, ValidationFailed
from schemas import Address, CardSnapshot, CartItem, Order, OrderItem
from users import public_payment_method

logger = logging.getLogger(__name__)

EMPTY_CART = "Your cart is empty. Add products before placing an order."
NO_ADDRESS = "You need to register an address before placing an order."
NO_PAYMENT = "You need to register a payment method before placing an order."
UNAVAILABLE_NAME = "Product unavailable"

# entries go away once no request holds the lock
_locks = weakref.WeakValueDictionary()
_locks_guard = threading.Lock()


def user_lock(user_id):
    key = str(user_id)
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _locks[key] = lock
        return lock


def _load_cart(db, user_id: ObjectId) -> List[Dict[str, Any]]:
    doc = db["user"].find_one({"_id": user_id}, {"cart": 1})
    if doc is None:
        raise AccessDenied()
    return list(doc.get("cart") or [])


def _save_cart(db, user_id: ObjectId, cart: List[Dict[str, Any]]) -> None:
    db["user"].update_one({"_id": user_id}, {"$set": {"cart": cart, "updated_at": now()}})


def _products_by_id(db, ids: Iterable[ObjectId]) -> Dict[ObjectId, Dict[str, Any]]:
    ids = list(set(ids))
    if not ids:
        return {}
    return {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}})}


def _find_line(cart: List[Dict[str, Any]], item_id: Optional[str]) -> int:
    oid = to_object_id(item_id)
    for index, line in enumerate(cart):
        if oid is not None and line.get("_id") == oid:
            return index
    raise NotFound("Item not found in cart")


# Cart

def get_cart(db, user: Dict[str, Any]) -> Dict[str, Any]:
    """Cart view with product details. Lines whose product is gone are dropped and the stored cart is fixed."""
    uid = user["_id"]
    with user_lock(uid):
        cart = _load_cart(db, uid)
        products = _products_by_id(db, (line["product_id"] for line in cart))
        kept = [line for line in cart if line["product_id"] in products]
        if len(kept) != len(cart):
            _save_cart(db, uid, kept)

    items = []
    total = 0.0
    for line in kept:
        product = products[line["product_id"]]
        total += product["price"] * line["quantity"]
        items.append({
            "id": str(line["_id"]),
            "product_id": str(line["product_id"]),
            "quantity": line["quantity"],
            "product": serialize_doc(product),
        })
    return {"items": items, "total": total}


def add_to_cart(db, user: Dict[str, Any], product_id: str, quantity: int = 1) -> Dict[str, Any]:
    if quantity is None or quantity < 1:
        raise ValidationFailed("Quantity must be at least 1")
    pid = to_object_id(product_id)
    if pid is None or db["product"].find_one({"_id": pid}, {"_id": 1}) is None:
        raise NotFound("Product not found")

    uid = user["_id"]
    with user_lock(uid):
        cart = _load_cart(db, uid)
        for line in cart:
            if line["product_id"] == pid:
                line["quantity"] = int(line.get("quantity", 1)) + quantity
                break
        else:
            cart.append(CartItem(product_id=pid, quantity=quantity).model_dump(by_alias=True))
        _save_cart(db, uid, cart)
    return get_cart(db, user)


def update_cart_item(db, user: Dict[str, Any], item_id: str, quantity: int) -> Dict[str, Any]:
    """Set a line's quantity. Zero or less removes the line."""
    uid = user["_id"]
    with user_lock(uid):
        cart = _load_cart(db, uid)
        index = _find_line(cart, item_id)
        if quantity <= 0:
            del cart[index]
        else:
            cart[index]["quantity"] = quantity
        _save_cart(db, uid, cart)
    return get_cart(db, user)


def remove_from_cart(db, user: Dict[str, Any], item_id: str) -> Dict[str, Any]:
    uid = user["_id"]
    with user_lock(uid):
        cart = _load_cart(db, uid)
        del cart[_find_line(cart, item_id)]
        _save_cart(db, uid, cart)
    return get_cart(db, user)


def clear_cart(db, user: Dict[str, Any]) -> None:
    with user_lock(user["_id"]):
        _save_cart(db, user["_id"], [])


# Stock

def _take_stock(db, product_id: ObjectId, quantity: int) -> Optional[int]:
    """Decrement stock by quantity, floored at zero, and add quantity to sold.

    Returns how much stock was actually taken, or None if the product no
    longer exists. A product without a stock value counts as out of stock.
    """
    products = db["product"]
    while True:
        res = products.update_one(
            {"_id": product_id, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity, "sold": quantity}},
        )
        if res.matched_count:
            return quantity
        # matches a short, null or missing stock
        before = products.find_one_and_update(
            {"_id": product_id, "stock": {"$not": {"$gte": quantity}}},
            {"$set": {"stock": 0}, "$inc": {"sold": quantity}},
            projection={"stock": 1},
            return_document=ReturnDocument.BEFORE,
        )
        if before is not None:
            stock = max(before.get("stock") or 0, 0)
            logger.warning("Product %s oversold: %s requested, %s in stock", product_id, quantity, stock)
            return stock
        if products.find_one({"_id": product_id}, {"_id": 1}) is None:
            return None


def _return_stock(db, product_id: ObjectId, quantity: int, taken: int) -> None:
    db["product"].update_one({"_id": product_id}, {"$inc": {"stock": taken, "sold": -quantity}})


# Orders

def create_order(db, user: Dict[str, Any]) -> Dict[str, Any]:
    uid = user["_id"]
    with user_lock(uid):
        current = db["user"].find_one({"_id": uid})
        if current is None:
            raise AccessDenied()

        cart = list(current.get("cart") or [])
        products = _products_by_id(db, (line["product_id"] for line in cart))
        lines = [line for line in cart if line["product_id"] in products]
        if len(lines) != len(cart):
            _save_cart(db, uid, lines)

        if not lines:
            raise ValidationFailed(EMPTY_CART)
        if not current.get("address"):
            raise ValidationFailed(NO_ADDRESS)
        if not current.get("payment_method"):
            raise ValidationFailed(NO_PAYMENT)

        items = [
            OrderItem(
                product_id=line["product_id"],
                quantity=line["quantity"],
                unit_price=products[line["product_id"]]["price"],
            )
            for line in lines
        ]
        order = Order(
            order_items=items,
            total_price=sum(item.unit_price * item.quantity for item in items),
            payment_method=CardSnapshot(**current["payment_method"]),
            shipping_address=Address(**current["address"]),
        )
        record = order.model_dump(by_alias=True)

        taken: List[tuple] = []
        try:
            for item in items:
                amount = _take_stock(db, item.product_id, item.quantity)
                if amount is not None:
                    taken.append((item.product_id, item.quantity, amount))
            res = db["user"].update_one(
                {"_id": uid},
                {"$push": {"orders": record}, "$set": {"cart": [], "updated_at": now()}},
            )
            if res.matched_count == 0:
                raise AccessDenied()
        except Exception:
            for product_id, quantity, amount in taken:
                _return_stock(db, product_id, quantity, amount)
            raise

    logger.info("Order %s placed by user %s, total %.2f", order.id, uid, order.total_price)
    return _render_order(record, products)


def _render_order(order: Dict[str, Any], products: Dict[ObjectId, Dict[str, Any]]) -> Dict[str, Any]:
    out = serialize_doc(order)
    out["payment_method"] = public_payment_method(out.get("payment_method"))
    for raw, item in zip(order.get("order_items", []), out.get("order_items", [])):
        product = products.get(raw["product_id"])
        if product:
            item["product_details"] = {
                "name": product["name"],
                "price": product["price"],
                "images": product.get("images", []),
            }
            item["unavailable"] = False
        else:
            item["product_details"] = {"name": UNAVAILABLE_NAME, "price": 0, "images": []}
            item["unavailable"] = True
    return out


def _render_orders(db, orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    products = _products_by_id(
        db, (item["product_id"] for order in orders for item in order.get("order_items", []))
    )
    return [_render_order(order, products) for order in orders]


def get_orders(db, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    return _render_orders(db, list(user.get("orders") or []))


def get_order(db, user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
    oid = to_object_id(order_id)
    for order in user.get("orders") or []:
        if oid is not None and order.get("_id") == oid:
            return _render_orders(db, [order])[0]
    raise NotFound("Order not found")
