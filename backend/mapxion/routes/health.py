from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from mapxion.deps import get_work_queue
from mapxion.work_queue import WorkQueue


router = APIRouter(tags=["health"])


@router.get("/", response_class=PlainTextResponse)
def root():
    return "mapxion api ok"


@router.get("/health")
def health(queue: WorkQueue = Depends(get_work_queue)):
    return {"ok": True, "queue_ready": queue.is_ready()}
