# app/api/endpoints/whatsapp.py

from fastapi import APIRouter, Depends, Response

from app.api.deps import get_evolution_client
from app.services.whatsapp_client import EvolutionClient

router = APIRouter(
    prefix="/api/whatsapp",
    tags=["WhatsApp"]
)


@router.get("/health")
async def whatsapp_health(gateway: EvolutionClient = Depends(get_evolution_client)):
    return {"success": True, **gateway.config_summary()}


@router.get("/status")
async def whatsapp_status(
    response: Response,
    gateway: EvolutionClient = Depends(get_evolution_client),
):
    # the dashboard polls this; never serve a cached connection state
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    status = await gateway.instance_status()
    return {**status, **gateway.config_summary()}
