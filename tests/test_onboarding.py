"""Tests for the onboarding state machine."""

import itertools
from datetime import datetime, timezone

import pytest

from conftest import ALICE, CONTRACT, HOST, REQUIRED_CHAIN_ID, establish
from letspay.errors import InvalidUsernameError, NotConnectedError, RegistrarUnavailable
from letspay.escrow import EscrowOrchestrator
from letspay.onboarding import (
    OnboardingMachine,
    OnboardingSignals,
    OnboardingState,
    derive_state,
)
from letspay.session import SessionManager
from letspay.verification import AttestationEvent


@pytest.fixture
def machine(store, registrar, verification, state_store):
    return OnboardingMachine(store, registrar, verification, state_store)


class FakeWatcher:
    """Attestation watcher that reports a fixed result."""

    def __init__(self, event=None):
        self.event = event
        self.accounts = []

    async def wait_for_verification(self, account, timeout=None):
        self.accounts.append(account)
        return self.event


def attestation_for(account) -> AttestationEvent:
    return AttestationEvent(
        user=account.lower(),
        user_identifier="0x" + "00" * 32,
        nationality="FRA",
        timestamp=datetime.now(timezone.utc),
        block_number=1,
    )


class TestDeriveState:
    """Tests for the pure transition rule."""

    def test_totality(self):
        """Every signal combination maps to exactly one defined state."""
        for combo in itertools.product([True, False], repeat=4):
            state = derive_state(OnboardingSignals(*combo))
            assert state in set(OnboardingState)

    def test_priority_order(self):
        assert derive_state(OnboardingSignals(False, True, True, True)) == OnboardingState.DISCONNECTED
        assert derive_state(OnboardingSignals(True, False, True, True)) == OnboardingState.AWAITING_USERNAME
        assert derive_state(OnboardingSignals(True, True, False, True)) == OnboardingState.AWAITING_VERIFICATION
        assert derive_state(OnboardingSignals(True, True, True, False)) == OnboardingState.AWAITING_SIGNUP
        assert derive_state(OnboardingSignals(True, True, True, True)) == OnboardingState.READY

    def test_default_signals_disconnected(self):
        assert derive_state(OnboardingSignals()) == OnboardingState.DISCONNECTED


class TestSessionChanges:
    """Tests for reset and seeding on session change."""

    def test_starts_disconnected(self, machine):
        assert machine.state == OnboardingState.DISCONNECTED

    def test_new_session_awaits_username(self, machine, store, provider):
        establish(store, provider)
        assert machine.state == OnboardingState.AWAITING_USERNAME

    def test_cached_username_avoids_flash(self, machine, store, provider, state_store):
        state_store.set_username(HOST, "host.letspay.eth")
        establish(store, provider)

        assert machine.state == OnboardingState.AWAITING_VERIFICATION
        assert machine.username == "host.letspay.eth"

    def test_cached_override_seeds_verified(self, machine, store, provider, state_store):
        state_store.set_username(HOST, "host.letspay.eth")
        state_store.set_verified(HOST)
        establish(store, provider)

        assert machine.state == OnboardingState.AWAITING_SIGNUP

    def test_disconnect_resets(self, machine, store, provider):
        establish(store, provider)
        store.clear()

        assert machine.state == OnboardingState.DISCONNECTED
        assert machine.username is None

    def test_subscribers_see_transitions(self, machine, store, provider):
        seen = []
        machine.subscribe(seen.append)

        establish(store, provider)
        store.clear()

        assert seen == [OnboardingState.AWAITING_USERNAME, OnboardingState.DISCONNECTED]


class TestRefresh:
    """Tests for cross-source refresh."""

    @pytest.mark.asyncio
    async def test_refresh_without_session(self, machine):
        assert await machine.refresh() == OnboardingState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_no_registrar_record(self, machine, store, provider):
        establish(store, provider)
        assert await machine.refresh() == OnboardingState.AWAITING_USERNAME

    @pytest.mark.asyncio
    async def test_full_progression(self, machine, store, provider, registrar, verification, state_store):
        registrar.names["host"] = HOST
        verification.verified.add(HOST.lower())
        provider.ledger.signed_up.add(HOST.lower())
        establish(store, provider)

        assert await machine.refresh() == OnboardingState.READY
        assert machine.username == "host.letspay.eth"
        assert state_store.load(HOST).username == "host.letspay.eth"
        assert state_store.load(HOST).verified is True

    @pytest.mark.asyncio
    async def test_cache_revalidated_against_registrar(self, machine, store, provider, state_store):
        state_store.set_username(HOST, "stale.letspay.eth")
        establish(store, provider)

        assert await machine.refresh() == OnboardingState.AWAITING_USERNAME
        assert state_store.load(HOST).username is None

    @pytest.mark.asyncio
    async def test_registrar_failure_keeps_cache(self, machine, store, provider, registrar, state_store):
        state_store.set_username(HOST, "host.letspay.eth")
        registrar.unavailable = True
        establish(store, provider)

        assert await machine.refresh() == OnboardingState.AWAITING_VERIFICATION
        assert machine.last_error == "Registrar unreachable"

    @pytest.mark.asyncio
    async def test_verification_failure_means_not_verified(self, machine, store, provider, registrar, verification):
        registrar.names["host"] = HOST
        verification.failing = True
        establish(store, provider)

        assert await machine.refresh() == OnboardingState.AWAITING_VERIFICATION

    @pytest.mark.asyncio
    async def test_override_short_circuits_remote_check(self, machine, store, provider, verification, state_store):
        state_store.set_verified(HOST)
        establish(store, provider)

        await machine.refresh()

        assert verification.checks == 0
        assert machine.signals.is_verified

    @pytest.mark.asyncio
    async def test_refresh_idempotent(self, machine, store, provider, registrar):
        registrar.names["host"] = HOST
        establish(store, provider)

        first = await machine.refresh()
        second = await machine.refresh()

        assert first == second == OnboardingState.AWAITING_VERIFICATION

    @pytest.mark.asyncio
    async def test_stale_refresh_discarded(self, machine, store, provider, registrar):
        registrar.names["host"] = HOST
        original = registrar.lookup_username

        async def switching(owner):
            result = await original(owner)
            establish(store, provider, ALICE)
            return result

        registrar.lookup_username = switching
        establish(store, provider, HOST)

        await machine.refresh()

        assert store.current.account == ALICE
        assert machine.username is None
        assert machine.state == OnboardingState.AWAITING_USERNAME


class TestTransitions:
    """Tests for user-driven transitions."""

    @pytest.mark.asyncio
    async def test_registration_scenario(self, machine, store, provider):
        """No record -> AWAITING_USERNAME; after registering -> AWAITING_VERIFICATION."""
        establish(store, provider)
        assert await machine.refresh() == OnboardingState.AWAITING_USERNAME

        record = await machine.register_username("Host")

        assert record.full_name == "host.letspay.eth"
        assert machine.state == OnboardingState.AWAITING_VERIFICATION
        assert await machine.refresh() == OnboardingState.AWAITING_VERIFICATION

    @pytest.mark.asyncio
    async def test_register_invalid_label(self, machine, store, provider, registrar):
        establish(store, provider)
        with pytest.raises(InvalidUsernameError):
            await machine.register_username("-x-")
        assert registrar.names == {}

    @pytest.mark.asyncio
    async def test_register_registrar_down(self, machine, store, provider, registrar):
        establish(store, provider)
        registrar.unavailable = True

        with pytest.raises(RegistrarUnavailable):
            await machine.register_username("host")
        assert machine.last_error == "Registrar unreachable"
        assert machine.state == OnboardingState.AWAITING_USERNAME

    @pytest.mark.asyncio
    async def test_register_requires_session(self, machine):
        with pytest.raises(NotConnectedError):
            await machine.register_username("host")

    @pytest.mark.asyncio
    async def test_check_username(self, machine, registrar):
        registrar.names["taken"] = ALICE
        assert await machine.check_username("taken") is False
        assert await machine.check_username("free") is True

    def test_mark_verified_idempotent(self, machine, store, provider, state_store):
        state_store.set_username(HOST, "host.letspay.eth")
        establish(store, provider)
        seen = []
        machine.subscribe(seen.append)

        assert machine.mark_verified() is True
        assert machine.mark_verified() is False

        assert machine.state == OnboardingState.AWAITING_SIGNUP
        assert seen == [OnboardingState.AWAITING_SIGNUP]
        assert state_store.load(HOST).verified is True

    def test_mark_verified_without_session(self, machine):
        assert machine.mark_verified() is False

    @pytest.mark.asyncio
    async def test_attestation_marks_verified(self, machine, store, provider, state_store):
        state_store.set_username(HOST, "host.letspay.eth")
        establish(store, provider)
        watcher = FakeWatcher(attestation_for(HOST))

        event = await machine.watch_attestation(watcher, timeout=1)

        assert event is not None
        assert watcher.accounts == [HOST]
        assert machine.state == OnboardingState.AWAITING_SIGNUP

    @pytest.mark.asyncio
    async def test_attestation_timeout_leaves_state(self, machine, store, provider):
        establish(store, provider)
        assert await machine.watch_attestation(FakeWatcher(None), timeout=0) is None
        assert not machine.signals.is_verified

    @pytest.mark.asyncio
    async def test_both_producers_converge(self, machine, store, provider, registrar, verification):
        registrar.names["host"] = HOST
        verification.verified.add(HOST.lower())
        establish(store, provider)

        await machine.watch_attestation(FakeWatcher(attestation_for(HOST)))
        await machine.refresh()

        assert machine.mark_verified() is False
        assert machine.state == OnboardingState.AWAITING_SIGNUP

    @pytest.mark.asyncio
    async def test_sign_up_reaches_ready(self, machine, store, provider, state_store):
        state_store.set_username(HOST, "host.letspay.eth")
        state_store.set_verified(HOST)
        establish(store, provider)
        orchestrator = EscrowOrchestrator(store)

        tx_hash = await machine.sign_up(orchestrator)

        assert tx_hash.startswith("0x")
        assert machine.state == OnboardingState.READY
        assert orchestrator.credit > 0


class TestSessionManagerIntegration:
    """Onboarding driven by real session establishment."""

    @pytest.mark.asyncio
    async def test_connect_triggers_lookup(self, machine, store, provider, registrar, state_store):
        registrar.names["host"] = HOST
        manager = SessionManager(provider, store, state_store, CONTRACT, REQUIRED_CHAIN_ID, poll_interval=0)
        manager.add_establishment_hook(machine.on_session_established)

        await manager.connect()

        assert registrar.lookups == 1
        assert machine.state == OnboardingState.AWAITING_VERIFICATION

    @pytest.mark.asyncio
    async def test_account_removal_regresses_to_disconnected(self, machine, store, provider, registrar, state_store):
        registrar.names["host"] = HOST
        manager = SessionManager(provider, store, state_store, CONTRACT, REQUIRED_CHAIN_ID, poll_interval=0)
        manager.add_establishment_hook(machine.on_session_established)
        await manager.start()
        await manager.connect()
        machine.mark_verified()

        await manager.on_accounts_changed([])

        assert machine.state == OnboardingState.DISCONNECTED
        assert state_store.load(HOST).verified is False
