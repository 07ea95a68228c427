"""REST endpoints for Polymux"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from polymux.gateway import Gateway
from polymux.models.commands import TurnOptions


logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Gateway"])


class TurnRequest(BaseModel):
    """Single-shot turn request"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    provider: str = Field(default="claude", description="Catalog provider id")
    prompt: str = Field(..., min_length=1, description="User prompt")
    options: TurnOptions = Field(default_factory=TurnOptions)
    platform: Optional[str] = Field(default=None, description="Chat platform (dingtalk, wechat_work, ...)")
    conversation_id: Optional[str] = Field(default=None, description="Platform conversation id")


class TurnResponse(BaseModel):
    provider: str
    reply: str


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


@router.get("/providers", summary="List providers")
async def list_providers(
    request: Request,
    x_user_id: Optional[str] = Header(default=None),
) -> List[Dict[str, Any]]:
    """Catalog entries with availability for the calling user"""
    gateway = get_gateway(request)
    providers = []
    for descriptor in gateway.catalog:
        entry = descriptor.to_public_dict()
        entry["available"] = await gateway.catalog.is_available(
            descriptor.id, x_user_id, gateway.resolver
        )
        providers.append(entry)
    return providers


@router.get("/providers/{provider_id}/models", summary="List provider models")
async def list_provider_models(provider_id: str, request: Request) -> Dict[str, Any]:
    models = get_gateway(request).catalog.models_for(provider_id)
    if models is None:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider_id}")
    return models


@router.get("/sessions/active", summary="Active sessions by provider")
async def active_sessions(request: Request) -> Dict[str, Any]:
    gateway = get_gateway(request)
    return {
        "sessions": {
            provider.provider_id: provider.list_active_sessions()
            for provider in gateway.factory.providers()
        },
        "conversations": [entry.to_dict() for entry in gateway.turns.list_conversations()],
    }


@router.post("/turns", response_model=TurnResponse, summary="Run one turn to completion")
async def run_turn(
    body: TurnRequest,
    request: Request,
    x_user_id: Optional[str] = Header(default=None),
) -> TurnResponse:
    gateway = get_gateway(request)
    if not gateway.catalog.is_valid_provider(body.provider):
        raise HTTPException(status_code=404, detail=f"Unknown provider: {body.provider}")

    # identity comes from the auth layer only
    options = body.options.model_copy(update={"user_id": x_user_id})

    reply = await gateway.turns.process_turn(
        body.provider,
        body.prompt,
        options,
        platform=body.platform,
        conversation_id=body.conversation_id,
    )
    return TurnResponse(provider=body.provider, reply=reply)


@router.delete("/conversations/{platform}", summary="Forget a bot conversation")
async def clear_conversation(
    platform: str,
    request: Request,
    conversation_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    cleared = get_gateway(request).turns.clear_conversation(platform, conversation_id, user_id)
    return {"cleared": cleared}
