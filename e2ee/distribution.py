"""Creation and distribution of channel session keys.

A distribution round works on one freshly generated session key:

1. Public identities of all members are fetched concurrently. A member whose
   lookup fails or returns nothing is simply left out.
2. The key is wrapped with RSA-OAEP for every member that has an identity.
   A member whose key cannot be imported or wrapped is left out as well.
3. All envelopes are submitted to the directory in one request so the
   server records either the whole generation or none of it.

The plaintext key is returned only after the directory accepted the batch;
the caller is responsible for caching it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional, Sequence, Tuple

import sentry_sdk

from . import asymmetric, symmetric
from .directory import Directory
from .errors import (
    DistributionRejected,
    MalformedEnvelope,
    NoEligibleRecipients,
    WrapFailure,
)
from .wire import PublicIdentity, SessionKeyEnvelope

logger = logging.getLogger(__name__)


def _unique(member_ids: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for member_id in member_ids:
        member_id = str(member_id)
        if member_id not in seen:
            seen.add(member_id)
            result.append(member_id)
    return result


class SessionKeyDistributor:
    """Generate a session key and hand it to every eligible channel member."""

    async def _fetch_identity(
        self, directory: Directory, member_id: str
    ) -> Tuple[str, Optional[PublicIdentity]]:
        try:
            identity = await directory.get_public_identity(member_id)
        except Exception:
            logger.warning("Public identity lookup for user %s failed", member_id, exc_info=True)
            identity = None
        if identity is None:
            logger.info("User %s has no registered public identity", member_id)
        return member_id, identity

    def wrap_for_members(
        self, session_key: bytes, identities: Sequence[Tuple[str, PublicIdentity]]
    ) -> List[SessionKeyEnvelope]:
        """Wrap ``session_key`` for each member, skipping unusable keys."""

        envelopes = []
        for member_id, identity in identities:
            try:
                public_key = asymmetric.import_public_key(identity.public_key)
                wrapped = asymmetric.wrap_session_key(session_key, public_key)
            except (MalformedEnvelope, WrapFailure):
                logger.warning("Could not wrap session key for user %s", member_id)
                continue
            envelopes.append(SessionKeyEnvelope(member_id, wrapped))
        return envelopes

    async def distribute(
        self, directory: Directory, channel_id: str, member_ids: Iterable[str]
    ) -> bytes:
        """Create, wrap and submit a session key for ``channel_id``.

        Returns
        -------
        bytes
            The new 32-byte session key once the directory accepted it.

        Raises
        ------
        NoEligibleRecipients
            If no member has a usable public identity.
        WrapFailure
            If wrapping failed for every eligible member.
        DistributionRejected
            If the directory refused the batch or the request itself failed.
            A server message is passed through unchanged.
        """

        members = _unique(member_ids)
        session_key = symmetric.generate_session_key()

        results = await asyncio.gather(
            *(self._fetch_identity(directory, member_id) for member_id in members)
        )
        eligible = [(mid, ident) for mid, ident in results if ident is not None]
        if not eligible:
            logger.error(
                "No member of channel %s has registered an identity key", channel_id
            )
            raise NoEligibleRecipients(
                f"none of the {len(members)} members of channel {channel_id} "
                "has a public identity"
            )

        envelopes = self.wrap_for_members(session_key, eligible)
        if not envelopes:
            raise WrapFailure(
                f"session key could not be wrapped for any member of channel {channel_id}"
            )

        # Past this point the request must not be abandoned halfway.
        try:
            result = await asyncio.shield(
                directory.distribute_session_key_envelopes(channel_id, envelopes)
            )
        except Exception as exc:
            logger.warning(
                "Submitting session key envelopes for channel %s failed: %s",
                channel_id,
                exc,
            )
            raise DistributionRejected(f"distribution request failed: {exc}") from exc
        if not result.success:
            if result.configuration_defect:
                logger.error(
                    "Directory schema defect while distributing keys for channel %s: %s",
                    channel_id,
                    result.message,
                )
                sentry_sdk.capture_message(
                    f"session key distribution hit a server configuration defect: "
                    f"{result.message}",
                    level="error",
                )
            raise DistributionRejected(
                result.message or "distribution rejected",
                status=result.status,
                configuration_defect=result.configuration_defect,
            )

        logger.info(
            "Distributed session key for channel %s to %d of %d members",
            channel_id,
            len(envelopes),
            len(members),
        )
        return session_key
