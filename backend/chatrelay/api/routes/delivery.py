from typing import List

from fastapi import APIRouter

from chatrelay.api.deps import ServicesDep
from chatrelay.schemas import ConnectivityUpdate, DeadLetterPublic, QueueStatusPublic

router = APIRouter(prefix="/delivery-queue", tags=["delivery-queue"])


@router.get("/", response_model=QueueStatusPublic)
async def queue_status(services: ServicesDep):
    return await services.queue.status()


@router.post("/connectivity", response_model=QueueStatusPublic)
async def set_connectivity(payload: ConnectivityUpdate, services: ServicesDep):
    """Report connectivity to the store; coming back online triggers a drain."""
    services.queue.set_online(payload.online)
    return await services.queue.status()


@router.post("/drain")
async def drain_queue(services: ServicesDep):
    delivered = await services.queue.drain()
    return {"delivered": delivered}


@router.get("/dead-letters", response_model=List[DeadLetterPublic])
async def list_dead_letters(services: ServicesDep):
    return [
        DeadLetterPublic(
            entry_id=letter.entry_id,
            message_id=letter.message_id,
            reason=letter.reason,
            retry_count=letter.retry_count,
            dropped_at=letter.dropped_at,
        )
        for letter in services.queue.dead_letters()
    ]


@router.delete("/")
async def clear_queue(services: ServicesDep):
    await services.queue.clear()
    return {"message": "Delivery queue cleared"}
