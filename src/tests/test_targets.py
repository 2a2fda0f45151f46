import pytest

from engine.errors import EmptyTargetSet
from engine.targets import Target, TargetResolver


def test_endpoints_then_assets_in_order(asset_store, add_asset):
    add_asset("a1", "web01", ip_address="192.168.0.5", hostname="web01.corp")
    add_asset("a2", "mail", hostname="mail.corp")
    add_asset("a3", "printer")
    resolver = TargetResolver(asset_store)

    targets = resolver.resolve({"targets": [" 10.0.0.1 ", "scanme.example"], "asset_ids": ["a3", "a1", "a2"]})

    assert targets == [
        Target("10.0.0.1"),
        Target("scanme.example"),
        Target("printer", kind="asset", asset_id="a3"),
        Target("192.168.0.5", kind="asset", asset_id="a1"),
        Target("mail.corp", kind="asset", asset_id="a2"),
    ]


def test_unknown_and_duplicate_assets_dropped(asset_store, add_asset):
    add_asset("a1", "web01", ip_address="192.168.0.5")
    resolver = TargetResolver(asset_store)

    targets = resolver.resolve({"asset_ids": ["missing", "a1", "a1"]})

    assert [t.asset_id for t in targets] == ["a1"]


def test_blank_endpoints_skipped(asset_store):
    resolver = TargetResolver(asset_store)
    assert resolver.resolve({"targets": ["", "  ", "host"]}) == [Target("host")]


@pytest.mark.parametrize("configuration", [
    {},
    {"targets": [], "asset_ids": []},
    {"targets": None, "asset_ids": ["nope"]},
])
def test_empty_target_set(asset_store, configuration):
    with pytest.raises(EmptyTargetSet):
        TargetResolver(asset_store).resolve(configuration)


def test_assets_resolved_with_current_address(asset_store, add_asset, session_factory):
    from engine.models import Asset

    add_asset("a1", "web01", ip_address="192.168.0.5")
    resolver = TargetResolver(asset_store)
    assert resolver.resolve({"asset_ids": ["a1"]})[0].value == "192.168.0.5"

    db = session_factory()
    db.query(Asset).filter(Asset.id == "a1").update({"ip_address": "192.168.0.99"})
    db.commit()
    db.close()

    assert resolver.resolve({"asset_ids": ["a1"]})[0].value == "192.168.0.99"


def test_get_asset(asset_store, add_asset):
    add_asset("a1", "db01", ip_address="10.1.1.1", type="SERVER", criticality="HIGH", operating_system="Linux")

    asset = asset_store.get_asset("a1")

    assert asset["name"] == "db01"
    assert asset["criticality"] == "HIGH"
    assert asset["operating_system"] == "Linux"
    assert asset_store.get_asset("missing") is None
