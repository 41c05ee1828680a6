"""
Tests for campaign/coupon stores, coupon code generation and coupon pools
"""

import json
from datetime import timedelta

import pytest

from promotion_engine.coupon_generator import CouponGenerator
from promotion_engine.coupon_pool import CouponPool
from promotion_engine.exceptions import InfrastructureError
from promotion_engine.ledger import InMemoryUsageLedger, UsageClaim, coupon_key
from promotion_engine.models import CouponIntent, CouponPoolTemplate
from promotion_engine.storage import SqlCouponStore, create_storage_engine, init_schema
from promotion_engine.stores import InMemoryCampaignStore, InMemoryCouponStore, JsonCampaignStore


@pytest.fixture
def sql_coupon_store(tmp_path):
    engine = create_storage_engine(f"sqlite:///{tmp_path / 'coupons.db'}")
    init_schema(engine)
    yield SqlCouponStore(engine)
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def coupon_store(request):
    if request.param == "memory":
        return InMemoryCouponStore()
    return request.getfixturevalue("sql_coupon_store")


def test_active_campaigns_filtered_and_ordered(make_campaign, now):
    store = InMemoryCampaignStore([
        make_campaign("low", priority=10),
        make_campaign("draft", status="draft"),
        make_campaign("future", valid_from=now + timedelta(days=1)),
        make_campaign("high-new", priority=300, created_at=now - timedelta(days=1)),
        make_campaign("high-old", priority=300, created_at=now - timedelta(days=9)),
        make_campaign("disabled", is_active=False),
    ])

    assert [c.id for c in store.get_active_campaigns(now)] == ["high-old", "high-new", "low"]


def test_json_store_loads_directory(tmp_path, make_campaign, now):
    (tmp_path / "spring").mkdir()
    (tmp_path / "spring" / "list.json").write_text(
        json.dumps([make_campaign("a").to_wire(), make_campaign("b", priority=200).to_wire()])
    )
    (tmp_path / "single.json").write_text(json.dumps(make_campaign("c", priority=150).to_wire()))
    (tmp_path / "broken.json").write_text("{not json")
    (tmp_path / "invalid.json").write_text(json.dumps({"id": "x", "name": "missing dates"}))

    store = JsonCampaignStore(str(tmp_path))

    assert len(store.load_all_campaigns()) == 3
    assert [c.id for c in store.get_active_campaigns(now)] == ["b", "c", "a"]


def test_json_store_missing_directory(tmp_path, now):
    store = JsonCampaignStore(str(tmp_path / "nowhere"))
    assert store.get_active_campaigns(now) == []


def test_json_store_reload_picks_up_new_files(tmp_path, make_campaign, now):
    store = JsonCampaignStore(str(tmp_path))
    assert store.get_active_campaigns(now) == []

    (tmp_path / "new.json").write_text(json.dumps(make_campaign("new").to_wire()))
    assert store.get_active_campaigns(now) == [], "Campaigns are cached until reload"

    store.reload()
    assert [c.id for c in store.get_active_campaigns(now)] == ["new"]


def test_coupon_store_uniqueness(coupon_store, make_coupon):
    assert coupon_store.insert_unique(make_coupon("WELCOME"))
    assert not coupon_store.insert_unique(make_coupon("welcome", id="another-id"))

    found = coupon_store.get_by_code("Welcome")
    assert found.id == "coupon-welcome"
    assert coupon_store.get_by_code("UNKNOWN") is None


def test_generator_retries_on_collision(make_coupon, now):
    store = InMemoryCouponStore([make_coupon("CBTAKEN1")])
    codes = iter(["CBTAKEN1", "CBFRESH1"])
    generator = CouponGenerator(store, code_factory=lambda prefix: next(codes))
    intent = CouponIntent(discount_type="flat_amount", discount_value=300, valid_until=now + timedelta(days=30))

    coupon = generator.generate(intent, "cust-1", "camp-a", now)

    assert coupon.code == "CBFRESH1"
    assert coupon.customer_id == "cust-1"
    assert coupon.issued_by == "camp-a"
    assert coupon.campaign_id is None
    assert store.get_by_code("CBFRESH1") is coupon


def test_generator_gives_up_after_max_attempts(make_coupon, now):
    store = InMemoryCouponStore([make_coupon("CBSAME01")])
    generator = CouponGenerator(store, max_attempts=3, code_factory=lambda prefix: "CBSAME01")
    intent = CouponIntent(discount_type="percentage", discount_value=10, valid_until=now + timedelta(days=7))

    with pytest.raises(InfrastructureError):
        generator.generate(intent, "cust-1", None, now)


def test_random_codes_use_prefix_and_length(now):
    store = InMemoryCouponStore()
    generator = CouponGenerator(store, code_length=10, prefix="cb")
    intent = CouponIntent(
        discount_type="percentage", discount_value=10, valid_until=now + timedelta(days=7), prefix="back"
    )

    coupon = generator.generate(intent, "cust-1", None, now)

    assert coupon.code.startswith("BACK")
    assert len(coupon.code) == 14
    assert coupon.code[4:].isalnum()


def test_generated_codes_are_unique(coupon_store, now):
    generator = CouponGenerator(coupon_store)
    intent = CouponIntent(discount_type="flat_amount", discount_value=100, valid_until=now + timedelta(days=1))

    codes = {generator.generate(intent, f"cust-{i}", None, now).code for i in range(50)}
    assert len(codes) == 50


def test_insert_batch_reports_taken_codes(coupon_store, make_coupon):
    coupon_store.insert_unique(make_coupon("TAKEN01"))
    batch = [make_coupon("FRESH01"), make_coupon("taken01", id="dup-id"), make_coupon("FRESH02")]

    rejected = coupon_store.insert_batch(batch)

    assert [c.id for c in rejected] == ["dup-id"]
    assert coupon_store.get_by_code("FRESH02") is not None
    assert coupon_store.get_by_code("TAKEN01").id == "coupon-taken01"


def test_deactivate_and_expiry_cleanup(coupon_store, make_coupon, now):
    coupon_store.insert_batch([
        make_coupon("OLD0001", valid_until=now - timedelta(days=1)),
        make_coupon("LIVE001"),
        make_coupon("LIVE002"),
    ])

    assert coupon_store.deactivate_expired(now) == 1
    assert coupon_store.deactivate_expired(now) == 0, "Already inactive coupons are not counted"
    assert not coupon_store.get_by_code("OLD0001").is_active

    assert coupon_store.deactivate(["live002", "MISSING"]) == 1
    assert coupon_store.get_by_code("LIVE001").is_active
    assert not coupon_store.get_by_code("LIVE002").is_active


def test_assign_to_customer_binds_once(coupon_store, make_coupon):
    coupon_store.insert_unique(make_coupon("POOL001", campaign_id="camp-a"))

    assert coupon_store.assign_to_customer("pool001", "cust-1")
    assert not coupon_store.assign_to_customer("POOL001", "cust-2")
    assert not coupon_store.assign_to_customer("NOPE001", "cust-2")
    assert coupon_store.get_by_code("POOL001").customer_id == "cust-1"


def test_generate_pool_in_batches(coupon_store, now):
    counter = iter(range(1000))
    generator = CouponGenerator(coupon_store, batch_size=3,
                                code_factory=lambda prefix: f"{prefix}{next(counter):04d}")
    template = CouponPoolTemplate(discount_type="flat_amount", discount_value=250, valid_days=10, prefix="pool")

    coupons = generator.generate_pool("camp-a", 7, template, now)

    assert [c.code for c in coupons] == [f"POOL{i:04d}" for i in range(7)]
    stored = coupon_store.coupons_for_campaign("camp-a")
    assert sorted(c.code for c in stored) == [c.code for c in coupons]
    assert all(c.customer_id is None and c.valid_until == now + timedelta(days=10) for c in stored)


def test_generate_pool_replaces_colliding_codes(make_coupon, now):
    store = InMemoryCouponStore([make_coupon("CB0001")])
    codes = iter(["CB0001", "CB0002", "CB0003"])
    generator = CouponGenerator(store, code_factory=lambda prefix: next(codes))
    template = CouponPoolTemplate(discount_type="percentage", discount_value=10)

    coupons = generator.generate_pool("camp-a", 2, template, now)

    assert sorted(c.code for c in coupons) == ["CB0002", "CB0003"]
    assert len(store.coupons_for_campaign("camp-a")) == 2


@pytest.fixture
def pool(coupon_store):
    ledger = InMemoryUsageLedger()
    return CouponPool(coupon_store, CouponGenerator(coupon_store), ledger)


def test_pool_hands_out_each_coupon_once(pool, now):
    template = CouponPoolTemplate(discount_type="flat_amount", discount_value=300)
    codes = pool.generate_pool("camp-a", 2, template, now)

    first = pool.get_available_coupon("camp-a", "cust-1", now)
    second = pool.get_available_coupon("camp-a", "cust-2", now)

    assert {first.code, second.code} == set(codes)
    assert (first.customer_id, second.customer_id) == ("cust-1", "cust-2")
    assert pool.get_available_coupon("camp-a", "cust-3", now) is None


def test_pool_integrity_and_cleanup(pool, make_coupon, now):
    pool.coupon_store.insert_batch([
        make_coupon("USED001", campaign_id="camp-a", usage_limit=1),
        make_coupon("FREE001", campaign_id="camp-a"),
        make_coupon("GONE001", campaign_id="camp-a", valid_until=now - timedelta(hours=1)),
        make_coupon("ELSE001", campaign_id="camp-b"),
    ])
    pool.ledger.reserve([UsageClaim(key=coupon_key("USED001"), customer_id="cust-1", max_usage=1)])

    stats = pool.validate_pool_integrity("camp-a", now)

    assert (stats.total_coupons, stats.used_coupons, stats.available_coupons, stats.expired_coupons) == (3, 1, 1, 1)
    assert pool.cleanup_expired_coupons(now) == 1
    assert pool.get_available_coupon("camp-a", "cust-9", now).code == "FREE001"
