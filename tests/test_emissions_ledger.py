from __future__ import annotations

import threading

import pytest

from carbonledger.ledger.constants import EmissionCategory
from carbonledger.ledger.emissions_ledger import EmissionsLedger
from carbonledger.runtime.errors import ApplyError
from carbonledger.runtime.state_invariants import aggregate_violations

A = "actor-a"
B = "actor-b"

T = int(EmissionCategory.TRANSPORTATION)
E = int(EmissionCategory.ENERGY)
D = int(EmissionCategory.DIET)


def _err(fn, *args) -> ApplyError:
    with pytest.raises(ApplyError) as ei:
        fn(*args)
    return ei.value


def test_create_profile_starts_empty() -> None:
    led = EmissionsLedger()
    assert led.create_profile(A) is True

    prof = led.get_profile(A)
    assert prof is not None
    assert prof.total_emissions == 0
    assert prof.emission_count == 0
    assert led.total_emissions(A) == 0


def test_create_profile_twice_is_duplicate_profile_every_time() -> None:
    led = EmissionsLedger()
    assert led.create_profile(A) is True

    for _ in range(2):
        e = _err(led.create_profile, A)
        assert e.code == "duplicate_profile"
        assert e.status == 409

    # the existing profile is untouched
    led.log_emission(A, 10, T, 1)
    _err(led.create_profile, A)
    assert led.total_emissions(A) == 10


def test_missing_profile_wins_over_invalid_input() -> None:
    led = EmissionsLedger()
    for units, category in [(0, T), (10_000, E), (50, 4), (-1, 0)]:
        e = _err(led.log_emission, B, units, category, 1)
        assert e.code == "profile_not_found"
        assert e.status == 404


@pytest.mark.parametrize("units", [1, 2, 5000, 9998, 9999])
@pytest.mark.parametrize("category", [T, E, D])
def test_valid_emission_boundaries_accepted(units: int, category: int) -> None:
    led = EmissionsLedger()
    led.create_profile(A)
    assert led.log_emission(A, units, category, 1) is True
    assert led.total_emissions(A) == units


@pytest.mark.parametrize(
    "units,category",
    [(0, T), (10_000, T), (10_001, E), (50, 0), (50, 4), (50, 255), (True, T), (50.0, T), ("50", T)],
)
def test_invalid_emission_rejected(units, category) -> None:
    led = EmissionsLedger()
    led.create_profile(A)

    e = _err(led.log_emission, A, units, category, 1)
    assert e.code == "invalid_emission"
    assert e.status == 400
    assert led.total_emissions(A) == 0
    assert led.view().last_emission_tick(A) == 0


def test_same_tick_is_duplicate_entry_other_tick_is_fine() -> None:
    led = EmissionsLedger()
    led.create_profile(A)

    assert led.log_emission(A, 50, T, 7) is True
    e = _err(led.log_emission, A, 50, T, 7)
    assert e.code == "duplicate_entry"
    assert e.status == 409

    assert led.log_emission(A, 50, T, 8) is True
    assert led.total_emissions(A) == 100


def test_rejected_emission_leaves_no_partial_write() -> None:
    led = EmissionsLedger()
    led.create_profile(A)
    led.log_emission(A, 20, D, 3)
    before = led.snapshot()

    _err(led.log_emission, A, 30, E, 3)
    _err(led.log_emission, A, 0, E, 4)

    assert led.snapshot() == before


def test_aggregates_match_accepted_records() -> None:
    led = EmissionsLedger()
    led.create_profile(A)

    units = [1, 9999, 42, 300, 7, 5000]
    for tick, u in enumerate(units, start=1):
        led.log_emission(A, u, [T, E, D][tick % 3], tick)
        # interleave some rejects
        with pytest.raises(ApplyError):
            led.log_emission(A, u, T, tick)
        with pytest.raises(ApplyError):
            led.log_emission(A, 0, T, tick + 100)

    prof = led.get_profile(A)
    assert prof is not None
    assert prof.total_emissions == sum(units)
    assert prof.emission_count == len(units)

    view = led.view()
    assert view.record_ticks(A) == list(range(1, len(units) + 1))
    rec = view.get_record(A, 2)
    assert rec is not None and rec.units == 9999 and rec.category == D


def test_scenario_running_total_with_duplicate_tick() -> None:
    led = EmissionsLedger()
    led.create_profile(A)

    assert led.log_emission(A, 50, T, 1) is True
    assert led.total_emissions(A) == 50

    assert led.log_emission(A, 75, E, 2) is True
    assert led.total_emissions(A) == 125

    e = _err(led.log_emission, A, 50, T, 2)
    assert e.code == "duplicate_entry"
    assert led.total_emissions(A) == 125


def test_scenario_actor_without_profile() -> None:
    led = EmissionsLedger()
    e = _err(led.log_emission, B, 10, T, 1)
    assert e.code == "profile_not_found"
    assert led.total_emissions(B) == 0
    assert led.get_profile(B) is None


def test_history_and_category_queries() -> None:
    led = EmissionsLedger()
    assert led.emission_history(A) == {"ok": True, "value": 0}

    led.create_profile(A)
    led.log_emission(A, 50, T, 1)
    led.log_emission(A, 75, E, 2)

    assert led.emission_history(A) == {"ok": True, "value": 125}
    # per-category breakdown is not tracked
    assert led.emissions_by_category(A, T) == 0
    assert led.emissions_by_category(A, E) == 0
    assert led.emissions_by_category(B, 99) == 0


def test_genesis_tick_collides_with_implicit_marker() -> None:
    led = EmissionsLedger()
    led.create_profile(A)

    # An actor that never logged has marker 0, so tick 0 reads as a duplicate.
    e = _err(led.log_emission, A, 10, T, 0)
    assert e.code == "duplicate_entry"
    assert led.log_emission(A, 10, T, 1) is True


def test_ledger_is_independent_per_actor() -> None:
    led = EmissionsLedger()
    led.create_profile(A)
    led.create_profile(B)

    led.log_emission(A, 10, T, 1)
    led.log_emission(B, 20, T, 1)

    assert led.total_emissions(A) == 10
    assert led.total_emissions(B) == 20


def test_concurrent_log_emission_accepts_one_entry_per_tick() -> None:
    led = EmissionsLedger()
    led.create_profile(A)
    led.create_profile(B)

    distinct_ticks = list(range(1, 21))
    racing_tick = 100
    racers = 8
    outcomes: list = []
    gate = threading.Barrier(len(distinct_ticks) + racers)

    def _log(actor: str, units: int, tick: int) -> None:
        gate.wait()
        try:
            led.log_emission(actor, units, T, tick)
        except ApplyError as e:
            outcomes.append((actor, tick, units, e.code))
        else:
            outcomes.append((actor, tick, units, "ok"))

    threads = [threading.Thread(target=_log, args=(A, tick, tick)) for tick in distinct_ticks]
    threads += [threading.Thread(target=_log, args=(B, 500 + i, racing_tick)) for i in range(racers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(outcomes) == len(threads)

    a_codes = [code for actor, _, _, code in outcomes if actor == A]
    assert a_codes == ["ok"] * len(distinct_ticks)

    b_results = [(units, code) for actor, _, units, code in outcomes if actor == B]
    winners = [units for units, code in b_results if code == "ok"]
    assert len(winners) == 1
    assert sorted(code for _, code in b_results if code != "ok") == ["duplicate_entry"] * (racers - 1)

    view = led.view()
    assert view.record_ticks(A) == distinct_ticks
    assert led.total_emissions(A) == sum(distinct_ticks)
    assert led.get_profile(A).emission_count == len(distinct_ticks)

    assert view.record_ticks(B) == [racing_tick]
    assert view.get_record(B, racing_tick).units == winners[0]
    assert view.last_emission_tick(B) == racing_tick

    snap = led.snapshot()
    assert snap["profiles"][B] == {"total_emissions": winners[0], "emission_count": 1}
    assert snap["emissions"][B] == {str(racing_tick): {"category": T, "units": winners[0]}}
    assert aggregate_violations(snap) == []
