import asyncio
import logging
from typing import List

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from models.common_models import Language, RunRequest, RunResult
from services.errors import InvalidRequest, MissingCredential, UpstreamFailure
from services.run_service import LANGUAGES, run_code

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["run"])

@router.post("/run", response_model=RunResult)
async def run(request: Request):
    # Errors are plain text so the editor can drop them straight into the output pane
    try:
        body = await request.json()
        req = RunRequest.model_validate(body)
        return await asyncio.to_thread(run_code, req.source_code, req.language_id)
    except ValidationError:
        return PlainTextResponse("Invalid source_code or language_id", status_code=400)
    except InvalidRequest as e:
        return PlainTextResponse(str(e), status_code=400)
    except MissingCredential as e:
        logger.error(str(e))
        return PlainTextResponse(str(e), status_code=500)
    except UpstreamFailure as e:
        return PlainTextResponse(e.detail, status_code=502)
    except Exception as e:
        logger.error(f"Unexpected error in /api/run: {e}", exc_info=True)
        return PlainTextResponse(str(e) or "Unexpected error", status_code=500)

@router.get("/languages", response_model=List[Language])
def languages():
    return LANGUAGES
