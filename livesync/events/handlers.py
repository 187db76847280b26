"""MATCH_ENDED handler: hands the match to the post-match finalizer."""

import logging

from livesync.events.bus import Event

logger = logging.getLogger("livesync.events")


def make_match_ended_handler(finalizer):
    """
    Build the MATCH_ENDED handler bound to a finalizer instance.

    Idempotent: the finalizer only fills fields that are still empty.
    """

    async def finalize_handler(event: Event):
        match_id = event.match_id
        if not match_id:
            logger.warning("[FINALIZER] Event missing match_id, skipping")
            return
        logger.info(f"[FINALIZER] MATCH_ENDED match_id={match_id} (source={event.payload.get('source', '?')})")
        await finalizer.on_match_ended(match_id)

    return finalize_handler
