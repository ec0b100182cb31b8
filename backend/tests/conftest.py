"""Shared fixtures: in-memory SQLite payments + registry DBs, fake explorer."""

from collections.abc import Callable, Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base, Entries, Notes, RegistryBase
from paytracker.services.errors import UpstreamUnavailableError
from paytracker.services.registry import ROOT_PARENT_HASH, IdentityRegistry
from paytracker.services.schemas.chain import RawTransfer
from paytracker.services.schemas.registry import Provider

WALLET_A = "0x" + "a" * 40
WALLET_B = "0x" + "b" * 40
MEMBER_1 = "0x" + "1" * 40
MEMBER_2 = "0x" + "2" * 40
STRANGER = "0x" + "9" * 40

HYPR_HASH = "0x" + "01" * 32
GRID_HASH = "0x" + "02" * 32
WEATHER_HASH = "0x" + "03" * 32
MAPS_HASH = "0x" + "04" * 32


def _memory_engine(metadata) -> Engine:
    # StaticPool: every session shares the one in-memory database.
    eng: Engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    metadata.create_all(eng)
    return eng


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    eng: Engine = _memory_engine(Base.metadata)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@pytest.fixture()
def session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    sess: Session = session_factory()
    yield sess
    sess.rollback()
    sess.close()


# ── Registry ─────────────────────────────────────────────────────────────────


@pytest.fixture()
def registry_factory() -> Generator[sessionmaker[Session], None, None]:
    eng: Engine = _memory_engine(RegistryBase.metadata)
    factory: sessionmaker[Session] = sessionmaker(bind=eng, expire_on_commit=False)
    with factory() as sess:
        sess.add_all(
            [
                Entries(namehash=HYPR_HASH, label="hypr", parent_hash=ROOT_PARENT_HASH, full_name="hypr"),
                Entries(
                    namehash=GRID_HASH,
                    label="grid-beta",
                    parent_hash=HYPR_HASH,
                    full_name="grid-beta.hypr",
                ),
                Entries(
                    namehash=WEATHER_HASH,
                    label="weatherapi",
                    parent_hash=GRID_HASH,
                    full_name="weatherapi.grid-beta.hypr",
                    tba="0x" + "C" * 40,
                ),
                Entries(
                    namehash=MAPS_HASH,
                    label="maps",
                    parent_hash=GRID_HASH,
                    full_name="maps.grid-beta.hypr",
                ),
                # Not a provider: no provider-id note.
                Entries(
                    namehash="0x" + "05" * 32,
                    label="draft",
                    parent_hash=GRID_HASH,
                    full_name="draft.grid-beta.hypr",
                ),
                Entries(
                    namehash="0x" + "06" * 32,
                    label="alice",
                    parent_hash=HYPR_HASH,
                    full_name="alice.hypr",
                    tba=MEMBER_1,
                ),
                Entries(
                    namehash="0x" + "07" * 32,
                    label="bob",
                    parent_hash=HYPR_HASH,
                    full_name="bob.hypr",
                    tba=MEMBER_2,
                ),
                Notes(entry_hash=WEATHER_HASH, label="~wallet", interpreted_data=WALLET_A.upper().replace("0X", "0x")),
                Notes(entry_hash=WEATHER_HASH, label="~provider-id", interpreted_data=" weather-1 "),
                Notes(entry_hash=MAPS_HASH, label="~wallet", interpreted_data=WALLET_B),
                Notes(entry_hash=MAPS_HASH, label="~provider-id", interpreted_data="maps-1"),
                Notes(entry_hash="0x" + "05" * 32, label="~wallet", interpreted_data="0x" + "d" * 40),
            ]
        )
        sess.commit()
    yield factory
    eng.dispose()


@pytest.fixture()
def registry(registry_factory: sessionmaker[Session]) -> IdentityRegistry:
    return IdentityRegistry(registry_factory)


@pytest.fixture()
def allow_list() -> dict[str, str]:
    return {MEMBER_1: "alice.hypr", MEMBER_2: "bob.hypr"}


@pytest.fixture()
def provider() -> Provider:
    return Provider(
        namehash=WEATHER_HASH,
        display_name="weatherapi.grid-beta.hypr",
        provider_id="weather-1",
        wallet_address=WALLET_A,
    )


@pytest.fixture()
def other_provider() -> Provider:
    return Provider(
        namehash=MAPS_HASH,
        display_name="maps.grid-beta.hypr",
        provider_id="maps-1",
        wallet_address=WALLET_B,
    )


# ── Explorer ─────────────────────────────────────────────────────────────────


@pytest.fixture()
def make_transfer() -> Callable[..., RawTransfer]:
    def _make(
        block: int,
        sender: str = MEMBER_1,
        to: str = WALLET_A,
        value: int = 1_500_000,
        tx_hash: str | None = None,
    ) -> RawTransfer:
        return RawTransfer(
            tx_hash=tx_hash or f"0x{block:062x}{sender[-2:]}",
            block_number=block,
            timestamp=1_700_000_000 + block,
            from_address=sender,
            to_address=to,
            value=value,
            gas_used=21_000,
        )

    return _make


class FakeExplorer:
    """In-memory chain: returns whatever transfers were queued for a wallet.

    Queued transfers are filtered to the requested range; ``replayed`` ones
    are not, so callers can exercise out-of-window handling.
    """

    def __init__(self, height: int = 1_000) -> None:
        self.height = height
        self.transfers: dict[str, list[RawTransfer]] = {}
        self.failing_wallets: set[str] = set()
        self.height_error: Exception | None = None
        self.calls: list[tuple[str, int, int]] = []
        # Returned on every call regardless of range, like a reindexing explorer.
        self.replayed: list[RawTransfer] = []

    def add(self, *transfers: RawTransfer) -> None:
        for t in transfers:
            self.transfers.setdefault(t.to_address, []).append(t)

    def current_height(self) -> int:
        if self.height_error is not None:
            raise self.height_error
        return self.height

    def fetch_incoming(self, wallet: str, from_block: int, to_block: int) -> list[RawTransfer]:
        self.calls.append((wallet, from_block, to_block))
        if wallet in self.failing_wallets:
            raise UpstreamUnavailableError(f"tokentx failed after 3 attempts for {wallet}")
        in_range = [
            t for t in self.transfers.get(wallet, []) if from_block <= t.block_number <= to_block
        ]
        return in_range + [t for t in self.replayed if t.to_address == wallet]


@pytest.fixture()
def explorer() -> FakeExplorer:
    return FakeExplorer()
