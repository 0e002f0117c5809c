from datetime import datetime, timedelta

from medcheckout.kv import KeyValueStore, email_link_key, intake_link_key, phi_key


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now


def test_set_get_delete():
    kv = KeyValueStore()
    kv.set("a", {"x": 1})
    assert kv.get("a") == {"x": 1}
    kv.set("a", {"x": 2})
    assert kv.get("a") == {"x": 2}
    assert kv.delete("a") is True
    assert kv.get("a") is None
    assert kv.delete("a") is False


def test_expired_entries_read_as_absent():
    clock = FakeClock()
    kv = KeyValueStore(clock=clock)
    kv.set("short", "v", ex=60)
    kv.set("forever", "v")
    assert kv.get("short") == "v"

    clock.now += timedelta(seconds=61)
    assert kv.get("short") is None
    assert kv.get("forever") == "v"


def test_take_is_one_time():
    kv = KeyValueStore()
    kv.set(phi_key("tok"), {"email": "a@b.co"}, ex=3600)
    assert kv.take(phi_key("tok")) == {"email": "a@b.co"}
    assert kv.take(phi_key("tok")) is None


def test_purge_expired():
    clock = FakeClock()
    kv = KeyValueStore(clock=clock)
    kv.set("a", 1, ex=10)
    kv.set("b", 2, ex=1000)
    clock.now += timedelta(seconds=20)
    assert kv.purge_expired() == 1
    assert kv.get("b") == 2


def test_key_builders():
    assert phi_key("t") == "intake:phi:t"
    assert intake_link_key("hf-1") == "intakeq:intake:hf-1"
    assert email_link_key(" Jane@Example.COM ") == "intakeq:email:jane@example.com"
