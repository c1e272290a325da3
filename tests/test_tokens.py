from nowplaying.tokens import TokenStore


def test_get_missing(tmp_path):
    assert TokenStore(tmp_path / "tokens.json").get("user1") is None


def test_set_get_delete(tmp_path):
    store = TokenStore(tmp_path / "nested" / "tokens.json")
    store.set("user1", "secret1")
    store.set("user2", "secret2")
    assert store.get("user1") == "secret1"

    store.delete("user1")
    assert store.get("user1") is None
    assert store.get("user2") == "secret2"
    # Deleting twice is harmless
    store.delete("user1")


def test_persisted(tmp_path):
    TokenStore(tmp_path / "tokens.json").set("user1", "secret1")
    assert TokenStore(tmp_path / "tokens.json").get("user1") == "secret1"
    assert list(tmp_path.glob("*.tmp")) == []


def test_corrupt_file(tmp_path):
    path = tmp_path / "tokens.json"
    path.write_text("{not json")
    store = TokenStore(path)
    assert store.get("user1") is None
    store.set("user1", "secret1")
    assert store.get("user1") == "secret1"
