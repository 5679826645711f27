"""Serves stored http-01 challenge responses to ACME validators."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from ..dependencies import get_challenge_responses
from ..services.errors import ChallengeNotFound, InvalidToken
from ..services.storage import ChallengeResponseStore

log = logging.getLogger(__name__)

router = APIRouter(tags=["acme-challenge"])

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Surrogate-Control": "no-store",
}


@router.get("/api/acme-challenge/{token}")
@router.get("/.well-known/acme-challenge/{token}")
async def serve_challenge(
    token: str,
    challenges: ChallengeResponseStore = Depends(get_challenge_responses)
):
    """
    Serve the key authorization stored for an http-01 token.

    Reachable at http://<domain>/.well-known/acme-challenge/<token> when a
    reverse proxy forwards that path here.
    """
    try:
        key_authorization = challenges.get(token)
        if not key_authorization:
            raise ChallengeNotFound("Challenge not found")
    except InvalidToken as e:
        log.warning("Invalid challenge token received: %r", token)
        return PlainTextResponse("Invalid token format", status_code=e.status_code)
    except ChallengeNotFound as e:
        log.info("No key authorization found for token %s", token)
        return PlainTextResponse(e.message, status_code=e.status_code)
    except Exception:
        log.exception("Error retrieving challenge for token %s", token)
        return PlainTextResponse("Internal Server Error retrieving challenge", status_code=500)

    log.info("Serving key authorization for token %s", token)
    return PlainTextResponse(key_authorization, headers=NO_CACHE_HEADERS)
