import asyncio
import logging

import pytest

from ledger_fakes import ALICE, BOB, OWNER, FakeAttestation, FakeFunding, FakeRegistry, FakeToken, project_row
from tukopamoja_hub import (
    ContributionRecord,
    FundingStats,
    LedgerConnectionError,
    Project,
    ProjectViewStore,
    ReadError,
    RPCError,
    ValidationError,
    list_projects,
    load_profile,
    project_matches,
    resolve_roles,
    search_projects,
)


def test_list_projects_attaches_stats_in_registry_order():
    registry = FakeRegistry([project_row(3, "C"), project_row(1, "A"), project_row(2, "B")])
    funding = FakeFunding({1: (100, 2, 14), 3: (5, 1, 2)})
    funding.delays[3] = 0.05

    projects = asyncio.run(list_projects(registry, funding))

    assert [p.id for p in projects] == [3, 1, 2]
    assert projects[0].stats == FundingStats(5, 1, 2)
    assert projects[1].stats == FundingStats(100, 2, 14)
    assert projects[2].stats == FundingStats()
    assert all(p.your_contribution is None for p in projects)


def test_stats_reads_for_all_projects_run_concurrently():
    registry = FakeRegistry([project_row(i) for i in range(1, 6)])
    funding = FakeFunding()
    for i in range(1, 6):
        funding.delays[i] = 0.01

    projects = asyncio.run(list_projects(registry, funding))

    assert [p.id for p in projects] == [1, 2, 3, 4, 5]
    assert funding.peak_in_flight == 5


def test_malformed_record_is_dropped_silently(caplog):
    registry = FakeRegistry([{"id": 1, "owner": "0xAA", "name": "Well"}, {"id": None, "name": "Bad"}])

    with caplog.at_level(logging.WARNING, logger="tukopamoja"):
        projects = asyncio.run(list_projects(registry, FakeFunding()))

    assert [p.id for p in projects] == [1]
    assert projects[0].name == "Well"
    assert any("invalid id" in r.getMessage() for r in caplog.records)


def test_output_never_longer_than_input_and_ids_are_non_negative():
    rows = [project_row(0), project_row("x"), None, project_row(-2), project_row("0x10"), "junk"]
    projects = asyncio.run(list_projects(FakeRegistry(rows), FakeFunding()))
    assert len(projects) <= len(rows)
    assert [p.id for p in projects] == [0, 16]
    assert all(isinstance(p.id, int) and p.id >= 0 for p in projects)


def test_stats_failure_zeroes_only_that_project(caplog):
    registry = FakeRegistry([project_row(1), project_row(2), project_row(3)])
    funding = FakeFunding({1: (10, 1, 3), 2: (20, 2, 6), 3: (30, 3, 9)})
    funding.failing_ids.add(2)

    with caplog.at_level(logging.WARNING, logger="tukopamoja"):
        projects = asyncio.run(list_projects(registry, funding))

    assert [p.id for p in projects] == [1, 2, 3]
    assert projects[0].stats == FundingStats(10, 1, 3)
    assert projects[1].stats == FundingStats(0, 0, 0)
    assert projects[2].stats == FundingStats(30, 3, 9)
    assert any("stats for project 2" in r.getMessage() for r in caplog.records)


def test_registry_failure_is_fatal_read_error():
    registry = FakeRegistry(fail=RPCError({"code": -32000, "message": "execution reverted: paused"}))
    with pytest.raises(ReadError) as info:
        asyncio.run(list_projects(registry, FakeFunding()))
    assert info.value.message == "paused"


def test_missing_ledgers_raise_connection_error():
    with pytest.raises(LedgerConnectionError):
        asyncio.run(list_projects(None, FakeFunding()))
    with pytest.raises(LedgerConnectionError):
        asyncio.run(list_projects(FakeRegistry(), None))


def test_connection_error_from_registry_is_not_wrapped():
    registry = FakeRegistry(fail=LedgerConnectionError("RPC session is not initialized"))
    with pytest.raises(LedgerConnectionError):
        asyncio.run(list_projects(registry, FakeFunding()))


def test_list_projects_with_account_reads_contributions():
    funding = FakeFunding()
    funding.amounts[(2, ALICE)] = 7
    projects = asyncio.run(
        list_projects(FakeRegistry([project_row(1), project_row(2)]), funding, account=ALICE)
    )
    assert [p.your_contribution for p in projects] == [0, 7]


def test_resolve_roles_owner_is_case_insensitive():
    attestation = FakeAttestation(owner="0x" + OWNER[2:].upper())
    roles = asyncio.run(resolve_roles(OWNER, attestation, ["Artist"]))
    assert roles.is_owner is True
    assert roles.is_attestor is False
    assert roles.attestation_flags == {"Artist": False}


def test_resolve_roles_flags_and_attestor():
    attestation = FakeAttestation()
    attestation.attestors.add(ALICE)
    attestation.types["Artist"] = {ALICE}
    roles = asyncio.run(resolve_roles(ALICE.upper().replace("0X", "0x"), attestation, ["Artist", "Judge", "Artist"]))
    assert roles.is_owner is False
    assert roles.is_attestor is True
    assert roles.attestation_flags == {"Artist": True, "Judge": False}


def test_resolve_roles_individual_failures_default_to_false():
    attestation = FakeAttestation(owner=ALICE)
    attestation.owner_fails = True
    attestation.types["Artist"] = {ALICE}
    attestation.types["Judge"] = {ALICE}
    attestation.failing_types.add("Judge")

    roles = asyncio.run(resolve_roles(ALICE, attestation, ["Artist", "Judge"]))

    assert roles.is_owner is False
    assert roles.attestation_flags == {"Artist": True, "Judge": False}


def test_resolve_roles_without_account_or_ledger_issues_no_calls():
    attestation = FakeAttestation()
    roles = asyncio.run(resolve_roles(None, attestation, ["Artist"]))
    assert roles.is_owner is False and roles.is_attestor is False
    assert roles.attestation_flags == {}
    assert attestation.calls == []
    assert asyncio.run(resolve_roles(ALICE, None)).account == ALICE


def test_load_profile_collects_owned_and_contributed_projects():
    registry = FakeRegistry(
        [project_row(1, "Mine", owner=ALICE.upper().replace("0X", "0x")), project_row(2, "Theirs", owner=BOB)]
    )
    funding = FakeFunding()
    funding.amounts[(2, ALICE)] = 3 * 10 ** 18
    attestation = FakeAttestation()
    attestation.types["Artist"] = {ALICE}
    token = FakeToken({ALICE: 5})

    profile = asyncio.run(load_profile(ALICE, registry, funding, attestation, token, ["Artist"]))

    assert [p.id for p in profile.owned_projects] == [1]
    assert [p.id for p in profile.contributed_projects] == [2]
    assert profile.contributions == (ContributionRecord(2, ALICE, 3 * 10 ** 18),)
    assert profile.roles.attestation_flags == {"Artist": True}
    assert profile.token_balance == 5
    assert profile.to_api()["contributions"][0]["amount"] == "3.0"


def test_load_profile_balance_failure_is_partial():
    profile = asyncio.run(
        load_profile(ALICE, FakeRegistry(), FakeFunding(), FakeAttestation(), FakeToken(fail=True))
    )
    assert profile.token_balance is None
    assert profile.to_api()["tokenBalance"] is None


def test_load_profile_requires_valid_account():
    with pytest.raises(ValidationError):
        asyncio.run(load_profile("0x123", FakeRegistry(), FakeFunding(), FakeAttestation()))


def test_search_matches_name_or_category_case_insensitively():
    projects = [
        Project(id=1, name="Community Garden", category="Art"),
        Project(id=2, name="Mural Project", category="Public Art"),
        Project(id=3, name="Well", category="Water"),
    ]
    assert [p.id for p in search_projects(projects, "art")] == [1, 2]
    assert [p.id for p in search_projects(projects, "ART")] == [1, 2]
    assert [p.id for p in search_projects(projects, "garden")] == [1]
    assert search_projects(projects, "zzz") == []
    assert len(search_projects(projects, "")) == 3


def test_search_skips_projects_without_name_or_category():
    assert not project_matches(Project(id=1, name="", category="Art"), "")
    assert not project_matches(Project(id=2, name="Art", category=""), "art")


def test_view_store_discards_late_stale_result():
    async def scenario():
        gates = [asyncio.Event(), asyncio.Event()]
        results = [[Project(id=1, name="old")], [Project(id=2, name="new")]]
        calls = []

        async def loader():
            idx = len(calls)
            calls.append(idx)
            await gates[idx].wait()
            return results[idx]

        store = ProjectViewStore(loader)
        first = asyncio.create_task(store.refresh())
        await asyncio.sleep(0)
        second = asyncio.create_task(store.refresh())
        await asyncio.sleep(0)
        gates[1].set()
        await second
        gates[0].set()
        await first
        return store

    store = asyncio.run(scenario())
    assert store.current.seq == 2
    assert [p.name for p in store.current.projects] == ["new"]


def test_view_store_keeps_previous_view_on_read_error():
    state = {"fail": False}

    async def loader():
        if state["fail"]:
            raise ReadError("node down")
        return [Project(id=1, name="Well", category="Water")]

    async def scenario():
        store = ProjectViewStore(loader)
        await store.refresh()
        state["fail"] = True
        with pytest.raises(ReadError):
            await store.refresh()
        return store

    store = asyncio.run(scenario())
    assert store.current.seq == 1
    assert len(store.current.projects) == 1
    assert store.last_error == "node down"


def test_failed_stale_refresh_does_not_overwrite_newer_view_state():
    gates = {}
    calls = {"n": 0}

    async def loader():
        calls["n"] += 1
        n = calls["n"]
        await gates[n].wait()
        if n == 1:
            raise ReadError("timed out")
        return [Project(id=1, name="Well", category="Water")]

    async def scenario():
        gates.update({1: asyncio.Event(), 2: asyncio.Event()})
        store = ProjectViewStore(loader)
        first = asyncio.create_task(store.refresh())
        await asyncio.sleep(0)
        second = asyncio.create_task(store.refresh())
        await asyncio.sleep(0)
        gates[2].set()
        await second
        gates[1].set()
        with pytest.raises(ReadError):
            await first
        return store

    store = asyncio.run(scenario())
    assert store.current.seq == 2
    assert store.last_error is None
