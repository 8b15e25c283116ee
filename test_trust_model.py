import pytest
import simpy

from trust_model import TrustEntry, TrustTable, TrustMediator, SimpleAodvTrustManager

A, B, C = "10.1.1.1", "10.1.1.2", "10.1.1.3"


def test_lookup_on_empty_table_misses():
    table = TrustTable()
    found, entry = table.lookup_trust_entry(A)
    assert not found
    assert entry.neighbour_address is None


def test_add_update_remove_cycle():
    table = TrustTable()
    table.add_record(TrustEntry(A, 0.8, 1.0))
    found, entry = table.lookup_trust_entry(A)
    assert found and entry.trust_value == 0.8

    table.update_record(TrustEntry(A, 0.35, 2.0))
    found, entry = table.lookup_trust_entry(A)
    assert found
    assert entry.trust_value == 0.35
    assert entry.timestamp == 2.0

    assert table.remove_record(TrustEntry(A))
    found, _ = table.lookup_trust_entry(A)
    assert not found
    assert len(table) == 0


def test_remove_is_keyed_on_address_not_position():
    table = TrustTable()
    for address in (A, B, C):
        table.add_record(TrustEntry(address, 0.5, 0.0))

    assert table.remove_record(TrustEntry(B))
    assert [e.neighbour_address for e in table] == [A, C]
    assert not table.remove_record(TrustEntry(B))


def test_duplicate_add_is_rejected():
    table = TrustTable()
    table.add_record(TrustEntry(A, 0.5, 0.0))
    with pytest.raises(ValueError):
        table.add_record(TrustEntry(A, 0.9, 1.0))
    assert len(table) == 1


def test_update_inserts_missing_record():
    table = TrustTable()
    table.update_record(TrustEntry(B, 0.6, 3.0))
    assert B in table
    assert table.lookup_trust_entry(B)[1].trust_value == 0.6


def test_lookup_returns_a_copy():
    table = TrustTable()
    table.add_record(TrustEntry(A, 0.5, 0.0))
    _, entry = table.lookup_trust_entry(A)
    entry.trust_value = 0.0
    assert table.lookup_trust_entry(A)[1].trust_value == 0.5


def test_mediator_cannot_be_instantiated():
    with pytest.raises(TypeError):
        TrustMediator()


def test_trust_decays_and_recovers():
    env = simpy.Environment()
    manager = SimpleAodvTrustManager(env, decay_factor=0.3, bonus_factor=0.02)
    assert manager.get_trust(A) == 1.0

    assert manager.record_observation(A, False) == pytest.approx(0.3)
    assert not manager.is_trusted(A)
    assert manager.record_observation(A, True) == pytest.approx(0.32)
    found, entry = manager.trust_table.lookup_trust_entry(A)
    assert found and entry.trust_value == pytest.approx(0.32)


def test_consecutive_failures_pin_trust_to_zero():
    env = simpy.Environment()
    manager = SimpleAodvTrustManager(env)
    for _ in range(3):
        manager.record_observation(B, False)
    assert manager.stats[B]["is_blackhole"]
    assert manager.record_observation(B, True) == 0.0


def test_watchdog_success_when_next_hop_retransmits():
    env = simpy.Environment()
    manager = SimpleAodvTrustManager(env, watchdog_timeout=1.0)
    manager.watch(42, A)

    def retransmit():
        yield env.timeout(0.2)
        manager.overheard(42, A)

    env.process(retransmit())
    env.run(until=2.0)
    assert manager.stats[A]["forward_success"] == 1
    assert manager.stats[A]["forward_fail"] == 0


def test_watchdog_failure_when_next_hop_stays_silent():
    env = simpy.Environment()
    manager = SimpleAodvTrustManager(env, watchdog_timeout=1.0)
    manager.watch(7, C)
    env.run(until=2.0)
    assert manager.stats[C]["forward_fail"] == 1
    assert manager.get_trust(C) == pytest.approx(0.3)
