from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from .rule_engine import RewardResult, RewardTrigger, TriggerEvent

router = APIRouter(tags=["Rewards"])


class RewardEventRequest(BaseModel):
    beneficiary_id: int = Field(..., gt=0)
    activity_id: int = Field(..., gt=0)
    context: dict = Field(default_factory=dict, description="Extra fields rule conditions may inspect")


def get_reward_trigger(request: Request) -> RewardTrigger:
    return request.app.state.reward_trigger


@router.post("/reward/{event}", response_model=list[RewardResult])
def fire_reward_event(
    event: TriggerEvent,
    request: RewardEventRequest,
    trigger: RewardTrigger = Depends(get_reward_trigger),
) -> list[RewardResult]:
    context = {**request.context, "beneficiary_id": request.beneficiary_id, "activity_id": request.activity_id}
    return trigger.fire(event, context)
