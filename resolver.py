"""
Identity resolution over stored contacts.

Given an email and/or phone number, the resolver finds every stored contact
sharing either value, merges the clusters they belong to under the oldest
primary contact, records the combination as a new secondary contact when it
carries new information, and returns the consolidated identity.

The whole read-match-merge-write sequence runs inside one store
transaction, so two overlapping requests cannot both decide that no match
exists and create separate primaries.
"""

from typing import List, Optional, Tuple

import structlog

from db_models import ConsolidatedIdentity, Contact, LinkPrecedence
from db_setup import ContactSession, ContactStore
from errors import ContactNotFound, DataInconsistency, InvalidInput, StoreBusy

logger = structlog.get_logger()


def normalize_identifier(value: Optional[str]) -> Optional[str]:
    """Blank values count as absent; anything else is kept as given."""
    if value is None or not value.strip():
        return None
    return value


class IdentityResolver:
    def __init__(self, store: ContactStore, retries: int = 2):
        self._store = store
        self._retries = retries

    def resolve(self, email: Optional[str] = None, phone_number: Optional[str] = None) -> ConsolidatedIdentity:
        email = normalize_identifier(email)
        phone_number = normalize_identifier(phone_number)

        if not email and not phone_number:
            raise InvalidInput("Either email or phoneNumber must be provided")

        attempt = 0
        while True:
            try:
                with self._store.transaction() as contacts:
                    return self._resolve(contacts, email, phone_number)
            except StoreBusy:
                if attempt >= self._retries:
                    raise
                attempt += 1
                logger.warning("resolve_retry", attempt=attempt, max_retries=self._retries)

    def _resolve(self, contacts: ContactSession, email: Optional[str], phone: Optional[str]) -> ConsolidatedIdentity:
        working_set = self._working_set(contacts, email, phone)

        if not working_set:
            contact = contacts.create(email, phone, LinkPrecedence.PRIMARY)
            logger.info("contact_created_primary", contact_id=contact.id)
            return ConsolidatedIdentity.from_cluster(contact.id, [contact])

        canonical, primaries = self._canonical_primary(contacts, working_set)
        self._merge(contacts, canonical, primaries, working_set)
        self._record_new_information(contacts, canonical, working_set, email, phone)

        cluster = contacts.find_by_id_or_linked_id([canonical.id])
        identity = ConsolidatedIdentity.from_cluster(canonical.id, cluster)
        logger.debug(
            "identity_resolved",
            primary_contact_id=identity.primary_contact_id,
            secondary_count=len(identity.secondary_contact_ids),
        )
        return identity

    def _working_set(self, contacts: ContactSession, email: Optional[str], phone: Optional[str]) -> List[Contact]:
        matches = contacts.find_by_email_or_phone(email, phone)
        if not matches:
            return []

        ids = set()
        for contact in matches:
            ids.add(contact.id)
            # pulls in the primary and siblings of a matched secondary
            if contact.linked_id is not None:
                ids.add(contact.linked_id)
        return contacts.find_by_id_or_linked_id(ids)

    def _canonical_primary(self, contacts: ContactSession, working_set: List[Contact]) -> Tuple[Contact, List[Contact]]:
        primaries = [c for c in working_set if c.is_primary]
        if primaries:
            # working set is already oldest first
            return primaries[0], primaries

        oldest = working_set[0]
        if oldest.linked_id is None:
            logger.error("secondary_without_link", contact_id=oldest.id)
            raise DataInconsistency(f"Secondary contact {oldest.id} has no linkedId")

        try:
            primary = contacts.find_by_id(oldest.linked_id)
        except ContactNotFound as exc:
            logger.error("dangling_link", contact_id=oldest.id, linked_id=oldest.linked_id)
            raise DataInconsistency(
                f"Contact {oldest.id} links to missing contact {oldest.linked_id}"
            ) from exc

        if not primary.is_primary:
            logger.error("chained_link", contact_id=oldest.id, linked_id=primary.id)
            raise DataInconsistency(
                f"Contact {oldest.id} links to secondary contact {primary.id}"
            )
        return primary, [primary]

    def _merge(self, contacts: ContactSession, canonical: Contact, primaries: List[Contact], working_set: List[Contact]):
        demoted = {p.id for p in primaries if p.id != canonical.id}
        if not demoted:
            return

        for contact in working_set:
            if contact.id in demoted:
                contacts.update(contact.id, LinkPrecedence.SECONDARY, canonical.id)
                logger.info("primary_demoted", contact_id=contact.id, primary_contact_id=canonical.id)
            elif contact.linked_id in demoted:
                # secondaries always point straight at the surviving primary
                contacts.update(contact.id, LinkPrecedence.SECONDARY, canonical.id)
                logger.info(
                    "secondary_relinked",
                    contact_id=contact.id,
                    previous_linked_id=contact.linked_id,
                    primary_contact_id=canonical.id,
                )

    def _record_new_information(
        self,
        contacts: ContactSession,
        canonical: Contact,
        working_set: List[Contact],
        email: Optional[str],
        phone: Optional[str],
    ):
        full_match = any(
            (not email or c.email == email) and (not phone or c.phone_number == phone)
            for c in working_set
        )
        if full_match:
            return

        email_seen = bool(email) and any(c.email == email for c in working_set)
        phone_seen = bool(phone) and any(c.phone_number == phone for c in working_set)
        if not (email_seen or phone_seen):
            return

        try:
            existing = contacts.find_exact(email, phone)
        except ContactNotFound:
            existing = None

        if existing is not None:
            logger.debug("duplicate_contact_suppressed", contact_id=existing.id)
            return

        contact = contacts.create(email, phone, LinkPrecedence.SECONDARY, canonical.id)
        logger.info("contact_created_secondary", contact_id=contact.id, primary_contact_id=canonical.id)
