from database import db


def test_register_login_and_me(client):
    res = client.post("/auth/register", json={"name": "Nadia", "email": "nadia@example.com", "password": "Groceries1"})
    assert res.status_code == 200
    token = res.json()["access_token"]

    me = client.get("/me", headers={"Authorization": f"Bearer {token}"}).json()["data"]
    assert me["email"] == "nadia@example.com"
    assert "passwordHash" not in me
    assert db["notification"].count_documents({"type": "account"}) == 1

    login = client.post("/auth/login", json={"email": "nadia@example.com", "password": "Groceries1"})
    assert login.status_code == 200


def test_register_rejects_weak_password(client):
    res = client.post("/auth/register", json={"name": "N", "email": "n@example.com", "password": "short"})
    assert res.status_code == 400
    assert res.json()["success"] is False


def test_register_rejects_duplicate_email(client, customer):
    res = client.post("/auth/register", json={"name": "R", "email": "rahim@example.com", "password": "Groceries1"})
    assert res.status_code == 400
    assert res.json()["message"] == "Email already registered"


def test_login_wrong_password(client):
    client.post("/auth/register", json={"name": "Nadia", "email": "nadia@example.com", "password": "Groceries1"})
    res = client.post("/auth/login", json={"email": "nadia@example.com", "password": "Wrong1234"})
    assert res.status_code == 401


def test_bad_token(client):
    res = client.get("/me", headers={"Authorization": "Bearer not-a-token"})
    assert res.status_code == 401
    assert res.json() == {"success": False, "message": "Unauthorized"}


def test_admin_creates_walk_in_customer(client, admin):
    _, admin_headers = admin
    res = client.post("/admin/customers", json={"name": "Walk In", "email": "walkin@example.com"}, headers=admin_headers)
    assert res.status_code == 201
    password = res.json()["data"]["password"]
    assert password.startswith("Ekm-")

    login = client.post("/auth/login", json={"email": "walkin@example.com", "password": password})
    assert login.status_code == 200


def test_products_search_sort_and_paginate(client, make_product):
    make_product(name="Green Apples", price=3.0, tags=["fruit"])
    make_product(name="Red Apples", price=1.0, tags=["fruit"])
    make_product(name="Whole Milk", price=2.0, tags=["dairy"])

    body = client.get("/products", params={"q": "apples", "sort": "price_asc"}).json()
    assert [p["name"] for p in body["data"]] == ["Red Apples", "Green Apples"]
    assert body["pagination"]["total"] == 2

    page = client.get("/products", params={"limit": 2, "page": 2}).json()
    assert len(page["data"]) == 1
    assert page["pagination"]["hasPrev"] is True


def test_inactive_product_is_hidden(client, make_product):
    pid = make_product(is_active=False)
    assert client.get(f"/products/{pid}").status_code == 404
    assert client.get("/products").json()["data"] == []


def test_admin_product_crud_is_logged(client, admin):
    _, admin_headers = admin
    res = client.post(
        "/admin/products",
        json={"name": "Eggs", "slug": "eggs", "sku": "EGG-12", "price": 3.5, "category": "dairy-eggs", "stock": 30},
        headers=admin_headers,
    )
    assert res.status_code == 201
    pid = res.json()["data"]["id"]

    res = client.put(f"/admin/products/{pid}", json={"price": 3.0}, headers=admin_headers)
    assert res.json()["data"]["price"] == 3.0
    update = db["activitylog"].find_one({"action": "UPDATE", "entity": "Product"})
    assert update["changes"] == {"before": {"price": 3.5}, "after": {"price": 3.0}}

    bad = client.put(f"/admin/products/{pid}", json={"price": -1}, headers=admin_headers)
    assert bad.status_code == 400

    assert client.delete(f"/admin/products/{pid}", headers=admin_headers).status_code == 200
    assert client.get(f"/products/{pid}").status_code == 404
    assert db["activitylog"].count_documents({"entity": "Product"}) == 3


def test_categories(client, admin):
    _, admin_headers = admin
    client.post("/admin/categories", json={"name": "Bakery", "slug": "bakery", "sortOrder": 2}, headers=admin_headers)
    client.post("/admin/categories", json={"name": "Dairy", "slug": "dairy", "sortOrder": 1}, headers=admin_headers)
    dup = client.post("/admin/categories", json={"name": "Dairy", "slug": "dairy"}, headers=admin_headers)
    assert dup.status_code == 400
    assert [c["slug"] for c in client.get("/categories").json()["data"]] == ["dairy", "bakery"]


def test_health(client):
    assert client.get("/").json() == {"message": "Ekomart API running"}
    assert client.get("/test").json()["backend"] == "✅ Running"


def test_seed_is_idempotent(client, admin):
    _, admin_headers = admin
    client.post("/admin/seed", headers=admin_headers)
    products = db["product"].count_documents({})
    client.post("/admin/seed", headers=admin_headers)
    assert products > 0
    assert db["product"].count_documents({}) == products
