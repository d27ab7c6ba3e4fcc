from typing import List, Optional

from fastapi import APIRouter, Depends, status

from ..models import StreamConfig, User
from ..schemas import StreamCreate, StreamOut, StreamStatusOut, StreamUpdate
from ..services.streams import StreamService, embed_url, extract_video_ref
from .deps import get_current_user, get_stream_service, require_admin

router = APIRouter()


def _stream_out(stream: Optional[StreamConfig]) -> Optional[StreamOut]:
    if stream is None:
        return None
    out = StreamOut.model_validate(stream)
    out.embed_url = embed_url(stream.stream_ref)
    return out


@router.get("/", response_model=List[StreamOut])
def list_streams(
    _: User = Depends(get_current_user),
    streams: StreamService = Depends(get_stream_service),
):
    return [_stream_out(stream) for stream in streams.list_streams()]


@router.post("/", response_model=StreamOut, status_code=status.HTTP_201_CREATED)
def create_stream(
    payload: StreamCreate,
    _: User = Depends(require_admin),
    streams: StreamService = Depends(get_stream_service),
):
    return _stream_out(streams.create_stream(payload.title, payload.source))


@router.get("/active", response_model=Optional[StreamOut])
def get_active_stream(streams: StreamService = Depends(get_stream_service)):
    return _stream_out(streams.get_active())


@router.post("/active/refresh-status", response_model=StreamStatusOut)
def refresh_active_status(
    _: User = Depends(require_admin),
    streams: StreamService = Depends(get_stream_service),
):
    stream, available = streams.refresh_active_stream_status()
    return {"available": available, "stream": _stream_out(stream)}


@router.get("/embed")
def get_embed_url(source: str):
    ref = extract_video_ref(source)
    return {"stream_ref": ref, "embed_url": embed_url(ref)}


@router.patch("/{stream_id}", response_model=StreamOut)
def update_stream(
    stream_id: str,
    payload: StreamUpdate,
    _: User = Depends(require_admin),
    streams: StreamService = Depends(get_stream_service),
):
    return _stream_out(streams.update_stream(stream_id, payload.title, payload.source))


@router.post("/{stream_id}/activate", response_model=StreamOut)
def activate_stream(
    stream_id: str,
    _: User = Depends(require_admin),
    streams: StreamService = Depends(get_stream_service),
):
    return _stream_out(streams.set_active(stream_id))


@router.post("/{stream_id}/deactivate", response_model=StreamOut)
def deactivate_stream(
    stream_id: str,
    _: User = Depends(require_admin),
    streams: StreamService = Depends(get_stream_service),
):
    return _stream_out(streams.deactivate(stream_id))


@router.delete("/{stream_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_stream(
    stream_id: str,
    _: User = Depends(require_admin),
    streams: StreamService = Depends(get_stream_service),
):
    streams.delete_stream(stream_id)
