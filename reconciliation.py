"""
Identity reconciliation over the Contact table.

A request carries an email, a phone number or both. The flow is:

1. look up the exact record and every record matching either value;
2. split the matches into primaries and secondaries;
3. pick one of five states and apply it:

   A. ExtendPrimary        one cluster matched, fragment is new -> add a secondary
   B. AlreadyCovered       one cluster matched, fragment is known -> no write
   C. MergePrimaries       fragments reach several clusters -> demote the juniors
   D. ResolveViaSecondary  only secondaries matched -> follow linkedId, then A/B
   E. NewIdentity          nothing matched -> create a primary

4. summarise the resolved primary's cluster.

The whole sequence runs in one BEGIN IMMEDIATE transaction, and lock
conflicts are retried with exponential backoff.
"""
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple, Union

import structlog

from config import Settings
from contact_repository import ContactRepository, utc_now
from db_models import Contact, ContactResponse, LinkPrecedence
from db_setup import transaction
from errors import DataIntegrityError, StoreError, ValidationError

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@dataclass
class ClusterMatches:
    primaries: List[Contact] = field(default_factory=list)
    secondaries: List[Contact] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.primaries and not self.secondaries

    def all(self) -> List[Contact]:
        return self.primaries + self.secondaries


def classify(contacts: Iterable[Contact]) -> ClusterMatches:
    matches = ClusterMatches()
    for contact in contacts:
        if contact.is_primary:
            matches.primaries.append(contact)
        else:
            matches.secondaries.append(contact)
    return matches


def seniority_key(contact: Contact):
    return (contact.createdAt, contact.id)


# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtendPrimary:
    primary: Contact


@dataclass(frozen=True)
class AlreadyCovered:
    primary: Contact


@dataclass(frozen=True)
class MergePrimaries:
    root_ids: Tuple[int, ...]
    loaded: Tuple[Contact, ...]


@dataclass(frozen=True)
class ResolveViaSecondary:
    secondary: Contact


@dataclass(frozen=True)
class NewIdentity:
    pass


ReconcileState = Union[ExtendPrimary, AlreadyCovered, MergePrimaries, ResolveViaSecondary, NewIdentity]


def root_ids_of(matches: ClusterMatches) -> Tuple[int, ...]:
    """Ids of the primaries that own the matched contacts, in first-seen order."""
    seen = OrderedSet(contact.id for contact in matches.primaries)
    for secondary in matches.secondaries:
        if secondary.linkedId is None:
            raise DataIntegrityError(
                f"Secondary contact {secondary.id} has no linkedId",
                contact_id=secondary.id,
            )
        seen.add(secondary.linkedId)
    return tuple(seen)


def is_covered(contacts: Iterable[Contact], email: Optional[str], phone: Optional[str]) -> bool:
    """True when every supplied value is already carried by one of `contacts`."""
    contacts = list(contacts)
    if email is not None and not any(c.email == email for c in contacts):
        return False
    if phone is not None and not any(c.phoneNumber == phone for c in contacts):
        return False
    return True


def plan(matches: ClusterMatches, email: Optional[str], phone: Optional[str]) -> ReconcileState:
    if matches.is_empty:
        return NewIdentity()

    root_ids = root_ids_of(matches)
    if len(root_ids) > 1:
        return MergePrimaries(root_ids=root_ids, loaded=tuple(matches.primaries))

    if not matches.primaries:
        return ResolveViaSecondary(secondary=matches.secondaries[0])

    primary = matches.primaries[0]
    if is_covered(matches.all(), email, phone):
        return AlreadyCovered(primary=primary)
    return ExtendPrimary(primary=primary)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def require_primary(contact: Optional[Contact], contact_id: int, referrer_id: Optional[int] = None) -> Contact:
    if contact is None or not contact.is_primary:
        reason = "missing" if contact is None else "not a primary"
        logger.error(
            "integrity_violation",
            contact_id=contact_id,
            referrer_id=referrer_id,
            reason=reason,
        )
        raise DataIntegrityError(
            f"Contact {contact_id} referenced by {referrer_id} is {reason}",
            contact_id=referrer_id,
            linked_id=contact_id,
        )
    return contact


def resolve_primary(repo: ContactRepository, contact: Contact) -> Contact:
    if contact.is_primary:
        return contact
    return require_primary(repo.get_contact(contact.linkedId), contact.linkedId, contact.id)


def maybe_add_secondary(
    repo: ContactRepository, primary_id: int, email: Optional[str], phone: Optional[str]
) -> Optional[Contact]:
    """Link a new secondary to `primary_id` when both values were supplied."""
    if email is None or phone is None:
        return None
    contact = repo.create_contact(
        email=email,
        phone=phone,
        precedence=LinkPrecedence.SECONDARY,
        linked_id=primary_id,
    )
    logger.info("secondary_created", contact_id=contact.id, primary_id=primary_id)
    return contact


def create_primary(repo: ContactRepository, email: Optional[str], phone: Optional[str]) -> Contact:
    contact = repo.create_contact(email=email, phone=phone, precedence=LinkPrecedence.PRIMARY)
    logger.info("primary_created", contact_id=contact.id)
    return contact


def merge_clusters(repo: ContactRepository, root_ids: Iterable[int], loaded: Iterable[Contact] = ()) -> Contact:
    """Fold several clusters into the one with the oldest primary.

    Each junior primary becomes a secondary of the elder and its own
    secondaries are re-pointed at the elder, so no chain is left behind.
    Must run inside a transaction.
    """
    by_id = {contact.id: contact for contact in loaded}
    roots = []
    for root_id in root_ids:
        contact = by_id.get(root_id) or repo.get_contact(root_id)
        roots.append(require_primary(contact, root_id))

    roots.sort(key=seniority_key)
    elder = roots[0]
    for junior in roots[1:]:
        repo.demote_to_secondary(junior.id, elder.id)
        relinked = repo.relink_secondaries(junior.id, elder.id)
        logger.info(
            "clusters_merged",
            primary_id=elder.id,
            demoted_id=junior.id,
            relinked=relinked,
        )
    return elder


def apply(
    repo: ContactRepository,
    state: ReconcileState,
    matches: ClusterMatches,
    email: Optional[str],
    phone: Optional[str],
) -> Contact:
    """Carry out `state` and return the primary whose cluster answers the request."""
    if isinstance(state, NewIdentity):
        return create_primary(repo, email, phone)
    if isinstance(state, AlreadyCovered):
        return state.primary
    if isinstance(state, ExtendPrimary):
        maybe_add_secondary(repo, state.primary.id, email, phone)
        return state.primary
    if isinstance(state, MergePrimaries):
        return merge_clusters(repo, state.root_ids, state.loaded)
    if isinstance(state, ResolveViaSecondary):
        primary = resolve_primary(repo, state.secondary)
        if not is_covered(matches.all(), email, phone):
            maybe_add_secondary(repo, primary.id, email, phone)
        return primary
    raise TypeError(f"Unhandled reconcile state: {state!r}")


# ---------------------------------------------------------------------------
# View
# ---------------------------------------------------------------------------

class OrderedSet:
    """Insertion-ordered collection without duplicates."""

    def __init__(self, items: Iterable = ()):
        self._items = []
        self._seen = set()
        for item in items:
            self.add(item)

    def add(self, item) -> None:
        if item in self._seen:
            return
        self._seen.add(item)
        self._items.append(item)

    def __contains__(self, item) -> bool:
        return item in self._seen

    def __iter__(self):
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)


def build_view(repo: ContactRepository, primary: Contact) -> ContactResponse:
    require_primary(primary, primary.id)
    secondaries = repo.list_secondaries(primary.id)

    emails = OrderedSet()
    phone_numbers = OrderedSet()
    for contact in [primary] + secondaries:
        if contact.email:
            emails.add(contact.email)
        if contact.phoneNumber:
            phone_numbers.add(contact.phoneNumber)

    return ContactResponse(
        primaryContactId=primary.id,
        emails=list(emails),
        phoneNumbers=list(phone_numbers),
        secondaryContactIds=[contact.id for contact in secondaries],
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _clean(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value)
    return value if value.strip() else None


class ContactReconciler:
    def __init__(
        self,
        settings: Settings,
        clock: Callable[[], str] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.clock = clock
        self.sleep = sleep

    def identify(self, email: Optional[str] = None, phone: Optional[str] = None) -> ContactResponse:
        email, phone = _clean(email), _clean(phone)
        if email is None and phone is None:
            raise ValidationError()

        attempt = 0
        while True:
            attempt += 1
            try:
                return self._identify_once(email, phone)
            except StoreError as exc:
                if not exc.retryable or attempt >= self.settings.max_attempts:
                    logger.error("identify_store_failure", attempt=attempt, error=exc.message)
                    raise

                delay = min(self.settings.max_backoff, self.settings.base_backoff * (2 ** (attempt - 1)))
                delay = delay + random.uniform(0, delay / 2)
                logger.warning(
                    "identify_retry",
                    attempt=attempt,
                    delay=delay,
                    error=exc.message,
                )
                self.sleep(delay)

    def _identify_once(self, email: Optional[str], phone: Optional[str]) -> ContactResponse:
        with transaction(self.settings.database_path, self.settings.db_timeout) as conn:
            repo = ContactRepository(conn, clock=self.clock)

            if email is not None and phone is not None:
                exact = repo.find_exact(email, phone)
                if exact is not None:
                    logger.debug("exact_match", contact_id=exact.id)
                    return build_view(repo, resolve_primary(repo, exact))

            matches = classify(repo.find_either_field(email, phone))
            state = plan(matches, email, phone)
            logger.debug("reconcile_state", state=type(state).__name__)
            primary = apply(repo, state, matches, email, phone)
            return build_view(repo, primary)
