import logging
import time
from typing import Any, Callable, Optional, Sequence

import httpx

from app.core.agent_contracts import get_stage_contract, render_stage_system_prompt
from app.core.stage_results import ChatMessage, Stage, StageFailure, TurnCancelled
from app.services.llm import CompletionCancelled, CompletionClient, CompletionRequestError

logger = logging.getLogger("uvicorn.error")
HISTORY_PROMPT_MAX_CHARS = 3000


def safe_list(value: Any, max_items: int, fallback: list[str]) -> list[str]:
    if not isinstance(value, list):
        return fallback
    cleaned = [str(v).strip() for v in value if str(v).strip()]
    return cleaned[:max_items]


def safe_str(value: Any, fallback: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return fallback


def history_payload(history: Sequence[ChatMessage]) -> list[dict[str, str]]:
    return [{"role": message.role, "content": message.content} for message in history]


def history_to_prompt(history: Sequence[ChatMessage]) -> str:
    if not history:
        return "No prior conversation in this session."
    formatted = "\n".join(f"{message.role.upper()}: {message.content}" for message in history)
    return formatted[:HISTORY_PROMPT_MAX_CHARS]


def join_prompt(parts: Sequence[Optional[str]]) -> str:
    return "\n".join(part for part in parts if part)


def invoke_stage(
    client: CompletionClient,
    stage: Stage,
    session_id: str,
    user_prompt: str,
    history: Sequence[ChatMessage] = (),
    extra_instruction: Optional[str] = None,
    image: Optional[tuple[bytes, str]] = None,
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> str:
    """Call the completion client with the stage's budget.

    Any call failure becomes a ``StageFailure``; a call abandoned through ``is_cancelled`` becomes
    ``TurnCancelled``.
    """
    contract = get_stage_contract(stage.value)
    system_prompt = render_stage_system_prompt(stage_id=stage.value, extra_instruction=extra_instruction)
    started = time.perf_counter()
    logger.info("agent_stage_start stage=%s session_id=%s", stage.value, session_id)
    try:
        if image is not None:
            image_bytes, mime_type = image
            raw = client.invoke_with_image(
                system_prompt,
                user_prompt,
                image_bytes,
                mime_type,
                max_tokens=contract.max_tokens,
                temperature=contract.temperature,
                is_cancelled=is_cancelled,
            )
        else:
            raw = client.invoke(
                system_prompt,
                user_prompt,
                history_payload(history),
                max_tokens=contract.max_tokens,
                temperature=contract.temperature,
                is_cancelled=is_cancelled,
            )
    except CompletionCancelled as exc:
        logger.info("agent_stage_cancelled stage=%s session_id=%s", stage.value, session_id)
        raise TurnCancelled(session_id, stage) from exc
    except CompletionRequestError as exc:
        logger.warning(
            "agent_stage_error stage=%s session_id=%s status=%s detail=%s",
            stage.value,
            session_id,
            exc.status_code,
            str(exc),
        )
        raise StageFailure(stage, session_id, str(exc), status_code=exc.status_code) from exc
    except (httpx.HTTPError, TimeoutError, ValueError) as exc:
        logger.warning("agent_stage_error stage=%s session_id=%s detail=%s", stage.value, session_id, str(exc))
        raise StageFailure(stage, session_id, str(exc)) from exc
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    logger.info("agent_stage_done stage=%s session_id=%s elapsed_ms=%s", stage.value, session_id, elapsed_ms)
    return str(raw or "")
