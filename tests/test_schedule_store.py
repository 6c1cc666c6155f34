from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from tarantulabox import models
from tarantulabox.errors import StoreUnavailable
from tarantulabox.services.rollover import RolloverEngine
from tarantulabox.services.schedule_store import SqlScheduleStore, UpdateResult

BASE = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


def build_store(tmp_path, create_tables: bool = True):
    engine = create_engine(
        f"sqlite:///{tmp_path}/store.db", connect_args={"check_same_thread": False}
    )
    if create_tables:
        models.Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SqlScheduleStore(factory), factory


def add_pet(factory, next_feed, interval=7, notify=True, name="Rosie", tz="UTC") -> int:
    with factory() as db:
        pet = models.Tarantula(
            species="Grammostola rosea",
            name=name,
            feed_interval_days=interval,
            notify=notify,
            next_feed_date=next_feed,
            timezone=tz,
            owner_id=1,
            created_at=BASE,
        )
        db.add(pet)
        db.commit()
        return pet.id


def test_list_soonest_orders_and_limits(tmp_path):
    store, factory = build_store(tmp_path)
    late = add_pet(factory, BASE + timedelta(days=3), name="late")
    first = add_pet(factory, BASE, name="first")
    second = add_pet(factory, BASE, name="second")
    add_pet(factory, BASE - timedelta(days=1), notify=False, name="quiet")
    add_pet(factory, BASE - timedelta(days=2), interval=0, name="broken")

    items = store.list_soonest(10)
    assert [item.id for item in items] == [first, second, late]
    assert [item.id for item in store.list_soonest(2)] == [first, second]
    assert store.list_soonest(0) == []
    assert len(store.list_soonest(10, include_disabled=True)) == 4


def test_list_soonest_returns_aware_utc(tmp_path):
    store, factory = build_store(tmp_path)
    local = BASE.astimezone(timezone(timedelta(hours=-5)))
    add_pet(factory, local)
    item = store.list_soonest(1)[0]
    assert item.next_feed_at == BASE
    assert item.next_feed_at.tzinfo is not None


def test_update_is_conditional_and_idempotent(tmp_path):
    store, factory = build_store(tmp_path)
    pet_id = add_pet(factory, BASE)
    item = store.get_item(pet_id)
    new_value = BASE + timedelta(days=7)

    assert store.update_next_feed_at(pet_id, new_value, expected=item) is UpdateResult.UPDATED
    assert store.update_next_feed_at(pet_id, new_value, expected=item) is UpdateResult.ALREADY_APPLIED
    assert store.get_item(pet_id).next_feed_at == new_value


def test_update_conflicts_after_owner_edit(tmp_path):
    store, factory = build_store(tmp_path)
    pet_id = add_pet(factory, BASE)
    item = store.get_item(pet_id)
    with factory() as db:
        pet = db.get(models.Tarantula, pet_id)
        pet.feed_interval_days = 10
        db.commit()

    result = store.update_next_feed_at(pet_id, BASE + timedelta(days=7), expected=item)
    assert result is UpdateResult.CONFLICT
    assert store.get_item(pet_id).next_feed_at == BASE


def test_update_reports_missing_record(tmp_path):
    store, factory = build_store(tmp_path)
    pet_id = add_pet(factory, BASE)
    item = store.get_item(pet_id)
    with factory() as db:
        db.delete(db.get(models.Tarantula, pet_id))
        db.commit()
    assert store.update_next_feed_at(pet_id, BASE + timedelta(days=7), expected=item) is UpdateResult.MISSING


def test_rollover_engine_end_to_end_on_sql(tmp_path):
    store, factory = build_store(tmp_path)
    pet_id = add_pet(factory, BASE)
    item = store.list_soonest(10)[0]
    RolloverEngine(store).advance(item, item.next_feed_at)
    assert store.get_item(pet_id).next_feed_at == datetime(2024, 1, 8, 8, 0, tzinfo=timezone.utc)
    with factory() as db:
        assert db.get(models.Tarantula, pet_id).last_rollover_from == BASE


def test_missing_table_surfaces_as_store_unavailable(tmp_path):
    store, _ = build_store(tmp_path, create_tables=False)
    with pytest.raises(StoreUnavailable):
        store.list_soonest(5)


def test_list_soonest_logs_invalid_intervals(tmp_path, caplog):
    store, factory = build_store(tmp_path)
    broken = add_pet(factory, BASE, interval=0, name="broken")
    add_pet(factory, BASE, name="fine")
    with caplog.at_level("ERROR", logger="tarantulabox.services.schedule_store"):
        items = store.list_soonest(10)
    assert [item.name for item in items] == ["fine"]
    assert f"pet {broken} has invalid feed interval 0" in caplog.text
