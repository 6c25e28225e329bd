"""Live stream lookup facade for domains outside Live."""

from sqlalchemy.orm import Session


def get_stream(db: Session, *, stream_id: str):
    from routers.live import service as live_service

    return live_service.get_stream(db, stream_id=stream_id)
