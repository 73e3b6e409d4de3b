import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from localizer.core.errors import NotFound
from localizer.models.video import VideoStatus
from localizer.schemas.video import StatusEvent

logger = logging.getLogger(__name__)

router = APIRouter()

TERMINAL = {VideoStatus.COMPLETED.value, VideoStatus.FAILED.value}


async def _until_disconnect(ws: WebSocket) -> None:
    while True:
        message = await ws.receive()
        if message['type'] == 'websocket.disconnect':
            return


@router.websocket('/videos/{video_id}/status/ws')
async def status_stream(ws: WebSocket, video_id: int):
    """Send the current status, then every change until the video settles or the client leaves."""
    pipeline = ws.app.state.pipeline
    await ws.accept()
    # subscribe before the snapshot so no transition slips in between
    async with pipeline.broadcaster.subscribe(video_id) as queue:
        try:
            video = await pipeline.get_video(video_id)
        except NotFound as e:
            await ws.send_json({"type": "error", **e.to_dict()})
            await ws.close(code=4404)
            return
        snapshot = StatusEvent(video_id=video.id, status=video.status, source_confirmed=bool(video.source_confirmed),
                               error_code=video.error_code, error_message=video.error_message,
                               error_retryable=video.error_retryable)
        # pending and analyzed can last indefinitely, so a disconnect must end the wait too
        gone = asyncio.ensure_future(_until_disconnect(ws))
        try:
            await ws.send_json({"type": "status", **snapshot.model_dump(mode='json')})
            status = snapshot.status
            while status not in TERMINAL:
                getter = asyncio.ensure_future(queue.get())
                await asyncio.wait({getter, gone}, return_when=asyncio.FIRST_COMPLETED)
                if not getter.done():
                    getter.cancel()
                    logger.debug("Status subscriber for video %s disconnected", video_id)
                    return
                event = getter.result()
                status = event.status
                await ws.send_json({"type": "status", **event.model_dump(mode='json')})
        except WebSocketDisconnect:
            logger.debug("Status subscriber for video %s disconnected", video_id)
            return
        finally:
            gone.cancel()
    await ws.close()
