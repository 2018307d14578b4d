from bson import ObjectId

from database import db


def start(client, headers, message="Where is my order?"):
    res = client.post("/chat/conversations", json={"subject": "Delivery", "message": message}, headers=headers)
    assert res.status_code == 201
    return res.json()["data"]["id"]


def conversation(cid):
    return db["chatconversation"].find_one({"_id": ObjectId(cid)})


def test_start_conversation(client, customer):
    uid, headers = customer
    cid = start(client, headers)
    doc = conversation(cid)
    assert doc["customerId"] == uid
    assert doc["status"] == "pending"
    assert doc["unreadAdminCount"] == 1
    assert doc["messages"][0]["sender"] == "customer"


def test_admin_reply_updates_counters_and_status(client, customer, admin):
    _, headers = customer
    _, admin_headers = admin
    cid = start(client, headers)

    res = client.post(f"/chat/conversations/{cid}/messages", json={"message": "On its way"}, headers=admin_headers)
    assert res.status_code == 201
    doc = conversation(cid)
    assert doc["unreadCustomerCount"] == 1
    assert doc["status"] == "active"
    assert doc["lastMessage"] == "On its way"


def test_admin_mark_read_only_touches_customer_messages(client, customer, admin):
    _, headers = customer
    _, admin_headers = admin
    cid = start(client, headers)
    client.post(f"/chat/conversations/{cid}/messages", json={"message": "On its way"}, headers=admin_headers)
    client.post(f"/chat/conversations/{cid}/messages", json={"message": "Thanks"}, headers=headers)

    assert client.post(f"/chat/conversations/{cid}/mark-read", headers=admin_headers).status_code == 200
    doc = conversation(cid)
    assert doc["unreadAdminCount"] == 0
    assert doc["unreadCustomerCount"] == 1
    reads = [(m["sender"], m["read"]) for m in doc["messages"]]
    assert reads == [("customer", True), ("admin", False), ("customer", True)]


def test_customer_mark_read(client, customer, admin):
    _, headers = customer
    _, admin_headers = admin
    cid = start(client, headers)
    client.post(f"/chat/conversations/{cid}/messages", json={"message": "On its way"}, headers=admin_headers)

    client.post(f"/chat/conversations/{cid}/mark-read", headers=headers)
    doc = conversation(cid)
    assert doc["unreadCustomerCount"] == 0
    assert doc["unreadAdminCount"] == 1
    assert doc["messages"][0]["read"] is False
    assert doc["messages"][1]["read"] is True


def test_other_customer_is_forbidden(client, customer, other_customer):
    _, headers = customer
    _, other_headers = other_customer
    cid = start(client, headers)
    assert client.get(f"/chat/conversations/{cid}", headers=other_headers).status_code == 403
    assert client.post(f"/chat/conversations/{cid}/mark-read", headers=other_headers).status_code == 403


def test_unknown_conversation(client, customer):
    _, headers = customer
    assert client.get(f"/chat/conversations/{ObjectId()}", headers=headers).status_code == 404


def test_listing_scope(client, customer, other_customer, admin):
    _, headers = customer
    _, other_headers = other_customer
    _, admin_headers = admin
    start(client, headers)
    start(client, other_headers)

    mine = client.get("/chat/conversations", headers=headers).json()["data"]
    assert len(mine) == 1
    assert "messages" not in mine[0]
    assert len(client.get("/chat/conversations", headers=admin_headers).json()["data"]) == 2


def test_admin_cannot_start_conversation(client, admin):
    _, admin_headers = admin
    res = client.post("/chat/conversations", json={"subject": "x", "message": "y"}, headers=admin_headers)
    assert res.status_code == 403
