from __future__ import annotations


def test_root(client):
    assert client.get("/").json() == {"service": "Orbya API", "status": "ok"}


def test_database_probe(client, make_user):
    make_user("alice")
    body = client.get("/test").json()
    assert body["backend"] == "running"
    assert body["database"] == "connected"
    assert "user" in body["collections"]


def test_collections_come_from_the_configured_database(mongo):
    import database

    assert database.get_collection("user").full_name == "orbya_test.user"
