from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.agent import get_runtime
from app.core.health_twin import HealthTwinProfile, format_health_twin_for_prompt
from app.orchestrator.runtime import AgentRuntime

router = APIRouter(prefix="/health-twin", tags=["health-twin"])


class HealthTwinResponse(BaseModel):
    user_id: str
    profile: HealthTwinProfile
    prompt_text: str


@router.get("/{user_id}", response_model=HealthTwinResponse)
def get_health_twin(user_id: str, runtime: AgentRuntime = Depends(get_runtime)) -> HealthTwinResponse:
    profile = runtime.profiles.load(user_id)
    return HealthTwinResponse(
        user_id=user_id,
        profile=profile,
        prompt_text=format_health_twin_for_prompt(profile),
    )
