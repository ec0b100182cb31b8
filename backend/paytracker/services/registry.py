"""Identity registry adapter over the namespace indexer database."""

import structlog
from sqlalchemy import and_, select
from sqlalchemy.orm import Session, aliased, sessionmaker

from db.models import Entries, Notes
from paytracker.services._helpers import normalize_address
from paytracker.services.errors import NamespaceNotFoundError
from paytracker.services.schemas.registry import Provider

logger = structlog.get_logger(__name__)

ROOT_PARENT_HASH = "0x" + "0" * 64


class IdentityRegistry:
    """Resolves providers (tracked recipients) and member accounts (valid senders)."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        wallet_note_label: str = "~wallet",
        provider_note_label: str = "~provider-id",
    ):
        self._session_factory = session_factory
        self.wallet_note_label = wallet_note_label
        self.provider_note_label = provider_note_label

    def _child_hash(self, session: Session, parent_hash: str, label: str) -> str | None:
        stmt = select(Entries.namehash).where(
            and_(Entries.label == label, Entries.parent_hash == parent_hash)
        )
        return session.scalars(stmt).first()

    def _resolve(self, session: Session, namespace_root: str) -> str:
        labels = [part for part in namespace_root.strip().split(".") if part]
        if not labels:
            raise NamespaceNotFoundError("Empty namespace root")

        current = ROOT_PARENT_HASH
        walked: list[str] = []
        for label in reversed(labels):
            walked.insert(0, label)
            child = self._child_hash(session, current, label)
            if child is None:
                raise NamespaceNotFoundError(f"{'.'.join(walked)} namespace not found")
            current = child
        return current

    def resolve_namespace(self, namespace_root: str) -> str:
        """Namehash of a dotted registry path such as ``grid-beta.hypr``."""
        with self._session_factory() as session:
            return self._resolve(session, namespace_root)

    def list_providers(self, namespace_root: str) -> list[Provider]:
        """Direct children of ``namespace_root`` carrying a wallet and a provider id."""
        wallet_note = aliased(Notes)
        provider_note = aliased(Notes)

        with self._session_factory() as session:
            root_hash = self._resolve(session, namespace_root)
            stmt = (
                select(
                    Entries.namehash,
                    Entries.full_name,
                    wallet_note.interpreted_data,
                    provider_note.interpreted_data,
                )
                .join(
                    wallet_note,
                    and_(
                        wallet_note.entry_hash == Entries.namehash,
                        wallet_note.label == self.wallet_note_label,
                    ),
                )
                .join(
                    provider_note,
                    and_(
                        provider_note.entry_hash == Entries.namehash,
                        provider_note.label == self.provider_note_label,
                    ),
                )
                .where(
                    Entries.parent_hash == root_hash,
                    wallet_note.interpreted_data.isnot(None),
                    provider_note.interpreted_data.isnot(None),
                )
                .order_by(Entries.full_name)
            )
            rows = session.execute(stmt).all()

        providers = [
            Provider(
                namehash=namehash,
                display_name=full_name,
                provider_id=provider_id.strip(),
                wallet_address=normalize_address(wallet),
            )
            for namehash, full_name, wallet, provider_id in rows
        ]
        logger.info("Loaded providers", namespace=namespace_root, count=len(providers))
        return providers

    def build_allow_list(self) -> dict[str, str]:
        """Every token-bound account in the registry -> its display name."""
        with self._session_factory() as session:
            rows = session.execute(
                select(Entries.tba, Entries.full_name).where(Entries.tba.isnot(None))
            ).all()

        allow_list = {normalize_address(tba): full_name for tba, full_name in rows if tba}
        logger.info("Loaded member accounts", count=len(allow_list))
        return allow_list
