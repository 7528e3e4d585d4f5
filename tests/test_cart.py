import gc
import threading

from bson import ObjectId

import cart
from conftest import auth_headers


def add(client, user, product, quantity=None):
    body = {"product_id": str(product["_id"])}
    if quantity is not None:
        body["quantity"] = quantity
    return client.post("/api/users/cart", json=body, headers=auth_headers(user))


def stored_cart(db, user):
    return db["user"].find_one({"_id": user["_id"]})["cart"]


def test_adding_same_product_twice_merges(client, db, customer, make_product):
    product = make_product()
    add(client, customer, product)
    response = add(client, customer, product)
    assert response.status_code == 200
    items = response.json()["cart"]["items"]
    assert len(items) == 1
    assert items[0]["quantity"] == 2
    assert items[0]["product"]["id"] == str(product["_id"])
    assert len(stored_cart(db, customer)) == 1


def test_add_with_quantity_increments(client, customer, make_product):
    product = make_product(price=20.0)
    add(client, customer, product, quantity=2)
    response = add(client, customer, product, quantity=3)
    cart = response.json()["cart"]
    assert cart["items"][0]["quantity"] == 5
    assert cart["total"] == 100


def test_cart_line_has_its_own_id(client, customer, make_product):
    product = make_product()
    line = add(client, customer, product).json()["cart"]["items"][0]
    assert line["id"] != line["product_id"]


def test_add_does_not_check_stock(client, customer, make_product):
    product = make_product(stock=0)
    response = add(client, customer, product, quantity=4)
    assert response.status_code == 200
    assert response.json()["cart"]["items"][0]["quantity"] == 4


def test_add_unknown_product(client, customer):
    response = client.post("/api/users/cart", json={"product_id": str(ObjectId())}, headers=auth_headers(customer))
    assert response.status_code == 404
    response = client.post("/api/users/cart", json={"product_id": "junk"}, headers=auth_headers(customer))
    assert response.status_code == 404


def test_add_rejects_zero_quantity(client, customer, make_product):
    assert add(client, customer, make_product(), quantity=0).status_code == 422


def test_update_sets_quantity(client, customer, make_product):
    product = make_product()
    line = add(client, customer, product, quantity=3).json()["cart"]["items"][0]
    response = client.put(f"/api/users/cart/{line['id']}", json={"quantity": 5}, headers=auth_headers(customer))
    assert response.status_code == 200
    assert response.json()["cart"]["items"][0]["quantity"] == 5


def test_update_to_zero_removes_line(client, db, customer, make_product):
    line = add(client, customer, make_product()).json()["cart"]["items"][0]
    response = client.put(f"/api/users/cart/{line['id']}", json={"quantity": 0}, headers=auth_headers(customer))
    assert response.json()["cart"]["items"] == []
    assert stored_cart(db, customer) == []


def test_update_to_negative_removes_line(client, db, customer, make_product):
    line = add(client, customer, make_product()).json()["cart"]["items"][0]
    response = client.put(f"/api/users/cart/{line['id']}", json={"quantity": -2}, headers=auth_headers(customer))
    assert response.status_code == 200
    assert stored_cart(db, customer) == []


def test_update_other_users_line_is_not_found(client, make_user, make_product):
    owner = make_user()
    intruder = make_user()
    line = add(client, owner, make_product()).json()["cart"]["items"][0]
    response = client.put(f"/api/users/cart/{line['id']}", json={"quantity": 1}, headers=auth_headers(intruder))
    assert response.status_code == 404
    response = client.delete(f"/api/users/cart/{line['id']}", headers=auth_headers(intruder))
    assert response.status_code == 404


def test_update_unknown_line(client, customer):
    response = client.put(f"/api/users/cart/{ObjectId()}", json={"quantity": 1}, headers=auth_headers(customer))
    assert response.status_code == 404


def test_remove_line(client, customer, make_product):
    first = make_product()
    second = make_product()
    add(client, customer, first)
    items = add(client, customer, second).json()["cart"]["items"]
    response = client.delete(f"/api/users/cart/{items[0]['id']}", headers=auth_headers(customer))
    assert response.status_code == 200
    remaining = response.json()["cart"]["items"]
    assert [i["product_id"] for i in remaining] == [str(second["_id"])]


def test_clear_cart_is_idempotent(client, db, customer, make_product):
    add(client, customer, make_product())
    assert client.delete("/api/users/cart/clear", headers=auth_headers(customer)).status_code == 200
    assert client.delete("/api/users/cart/clear", headers=auth_headers(customer)).status_code == 200
    assert stored_cart(db, customer) == []


def test_get_cart_drops_deleted_products(client, db, customer, make_product):
    kept = make_product()
    gone = make_product()
    add(client, customer, kept)
    add(client, customer, gone)
    db["product"].delete_one({"_id": gone["_id"]})

    response = client.get("/api/users/cart", headers=auth_headers(customer))
    items = response.json()["cart"]["items"]
    assert [i["product_id"] for i in items] == [str(kept["_id"])]
    assert [line["product_id"] for line in stored_cart(db, customer)] == [kept["_id"]]


def test_concurrent_adds_merge_into_one_line(db, customer, make_product):
    product = make_product()
    start = threading.Barrier(8)

    def add_many():
        start.wait()
        for _ in range(10):
            cart.add_to_cart(db, customer, str(product["_id"]), 1)

    threads = [threading.Thread(target=add_many, daemon=True) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert not any(t.is_alive() for t in threads)
    lines = stored_cart(db, customer)
    assert len(lines) == 1
    assert lines[0]["quantity"] == 80


def test_user_lock_is_shared_while_held_and_then_dropped():
    user_id = ObjectId()
    lock = cart.user_lock(user_id)
    assert cart.user_lock(str(user_id)) is lock

    del lock
    gc.collect()
    assert str(user_id) not in cart._locks
