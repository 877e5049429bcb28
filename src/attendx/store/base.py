"""Storage contracts for identities, templates and the attendance ledger.

Every mutating operation is atomic per identity: a caller observes either
the full effect or none of it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from attendx.domain import AttendanceRecord, Identity, Template


class IdentityDirectory(Protocol):
    """Provisioned identities and their enrollment status."""

    def add_identity(self, identity: Identity) -> Identity:
        """Create the identity, or update its display name if it already exists."""
        ...

    def get_identity(self, identity_id: str) -> Identity | None:
        """Return the identity, or None if it was never provisioned."""
        ...


class TemplateStore(Protocol):
    """Per-identity template persistence with compare-and-swap replacement."""

    def get(self, identity_id: str) -> Template | None:
        """Return the committed template for an identity, if any."""
        ...

    def atomic_replace(self, identity_id: str, template: Template, expected_prior_version: int | None) -> None:
        """Replace the identity's template in one all-or-nothing step.

        Also marks the identity as enrolled within the same operation.

        Args:
            identity_id: Key of the template.
            template: The new template; its samples fully supersede the old ones.
            expected_prior_version: Version the caller read before building
                ``template``, or None if it saw no template.

        Raises:
            ConflictError: If the stored version differs from ``expected_prior_version``.
            UnknownIdentity: If the identity was never provisioned.
        """
        ...


class AttendanceLedger(Protocol):
    """Append-only attendance records, unique per (identity, cooldown key)."""

    def get_latest(self, identity_id: str) -> AttendanceRecord | None:
        """Return the most recent record for an identity."""
        ...

    def insert_if_absent(self, identity_id: str, record: AttendanceRecord, cooldown_key: str) -> AttendanceRecord:
        """Insert ``record`` unless another record already holds ``cooldown_key``.

        Returns:
            The record stored under ``(identity_id, cooldown_key)``: ``record``
            itself if it was inserted, otherwise the earlier one.
        """
        ...


class Store(IdentityDirectory, TemplateStore, AttendanceLedger, Protocol):
    """A backend implementing all three contracts."""

    def close(self) -> None:
        """Release connections and other resources."""
        ...
