import json

from liststore import CartStore, CompareStore, JsonFileStorage, MemoryStorage, Notice, WishlistStore


def product(i, price=1.0):
    return {"id": f"p{i}", "name": f"Product {i}", "price": price}


def test_wishlist_rejects_duplicate():
    store = WishlistStore(MemoryStorage())
    assert store.add(product(1)) == Notice("success", "Added to wishlist!")
    assert store.add(product(1)) == Notice("error", "Already in wishlist")
    assert len(store) == 1


def test_wishlist_rejects_101st_item():
    store = WishlistStore(MemoryStorage())
    for i in range(100):
        store.add(product(i))
    assert store.add(product(100)) == Notice("error", "Wishlist cannot exceed 100 items")
    assert len(store) == 100
    # duplicates are still called out on a full list
    assert store.add(product(5)).message == "Already in wishlist"


def test_compare_caps_at_four():
    store = CompareStore(MemoryStorage())
    for i in range(4):
        assert store.add(product(i)).level == "success"
    assert store.add(product(4)) == Notice("error", "You can compare up to 4 products only")
    assert [item["id"] for item in store.items] == ["p0", "p1", "p2", "p3"]


def test_compare_ignores_duplicates():
    store = CompareStore(MemoryStorage())
    store.add(product(1))
    assert store.add(product(1)) is None
    assert len(store) == 1


def test_every_mutation_is_persisted():
    storage = MemoryStorage()
    store = CompareStore(storage)
    store.add(product(1))
    store.add(product(2))
    store.remove("p1")
    assert json.loads(storage.get("compare")) == [product(2)]
    store.clear()
    assert json.loads(storage.get("compare")) == []


def test_reload_from_storage():
    storage = MemoryStorage()
    WishlistStore(storage).add(product(1))
    reloaded = WishlistStore(storage)
    assert reloaded.contains("p1")


def test_corrupt_storage_starts_empty():
    storage = MemoryStorage()
    storage.set("wishlist", "{not json")
    assert len(WishlistStore(storage)) == 0


def test_json_file_storage(tmp_path):
    store = CartStore(JsonFileStorage(tmp_path))
    store.add(product(1, price=2.5), quantity=2)
    assert json.loads((tmp_path / "cart.json").read_text())[0]["quantity"] == 2
    assert CartStore(JsonFileStorage(tmp_path)).subtotal == 5.0


def test_cart_merges_and_updates():
    store = CartStore(MemoryStorage())
    store.add(product(1, price=2.0))
    assert store.add(product(1, price=2.0), quantity=2) == Notice("success", "Cart updated")
    assert store.items[0]["quantity"] == 3

    store.update_quantity("p1", 5)
    assert store.subtotal == 10.0
    assert store.update_quantity("missing", 1).level == "error"

    store.update_quantity("p1", 0)
    assert len(store) == 0


def test_custom_key_and_identity():
    storage = MemoryStorage()
    store = WishlistStore(storage, key="wishlist:guest", item_id=lambda item: item["sku"])
    store.add({"sku": "A"})
    assert store.contains("A")
    assert storage.get("wishlist") is None
