import asyncio
import logging
from typing import List

import requests

import config
from models.common_models import Language, RunResult
from services.errors import InvalidRequest, MissingCredential, UpstreamFailure
from services.presence_service import best_effort
from services.session_service import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE_ID = 63

# Judge0 CE language ids (may vary between Judge0 instances)
LANGUAGES: List[Language] = [
    Language(id=63, name="JavaScript (Node.js)"),
    Language(id=71, name="Python (3.x)"),
    Language(id=54, name="C# (Mono)"),
    Language(id=51, name="C# (.NET Core)"),
    Language(id=52, name="C++ (GCC)"),
    Language(id=62, name="Java (OpenJDK)"),
]

RUN_FAILED_HINT = "Code execution failed. Set JUDGE0_API_KEY on the server or try again."


def run_code(source_code: str, language_id: int) -> RunResult:
    """
    Execute a snippet on Judge0 and wait for the result (wait=true, no polling).
    No timeout is applied beyond whatever the provider enforces.
    """
    if not source_code or not language_id:
        raise InvalidRequest("Missing source_code or language_id")

    api_key = config.JUDGE0_API_KEY
    host = config.JUDGE0_API_HOST
    if not api_key:
        raise MissingCredential("JUDGE0_API_KEY is not set on the server.")

    resp = requests.post(
        f"https://{host}/submissions",
        params={"base64_encoded": "false", "wait": "true"},
        headers={
            "Content-Type": "application/json",
            "X-RapidAPI-Key": api_key,
            "X-RapidAPI-Host": host,
        },
        json={"source_code": source_code, "language_id": language_id},
    )

    if not resp.ok:
        logger.warning(f"Judge0 returned {resp.status_code}")
        raise UpstreamFailure(resp.text or "Judge0 error", status_code=resp.status_code)

    data = resp.json() or {}
    return RunResult(
        stdout=data.get("stdout") or "",
        stderr=data.get("stderr") or "",
        compile_output=data.get("compile_output") or "",
        status=data.get("status") or {},
    )


def format_run_output(result: RunResult) -> str:
    out = result.stdout
    if result.stderr:
        out += "\n[stderr]\n" + result.stderr
    if result.compile_output:
        out += "\n[compile]\n" + result.compile_output
    return out


async def run_for_session(store: SessionStore, session_id: str, source_code: str, language_id: int) -> str:
    """
    Run code and share its output with everyone in the session.

    Failures never raise: they become diagnostic text in the output pane,
    persisted best-effort like a normal run.
    """
    try:
        result = await asyncio.to_thread(run_code, source_code, language_id)
        out = format_run_output(result)
        await store.update_output(session_id, out)
        return out or "(no output)"
    except Exception as e:
        logger.info(f"Run in session {session_id} failed: {e}")
        message = f"{RUN_FAILED_HINT}\n\n{e}"
        await best_effort(store.update_output(session_id, message), f"Saving run failure for {session_id}")
        return message
