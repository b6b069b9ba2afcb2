from __future__ import annotations
import os
import re
import logging
from pathlib import Path
from typing import Optional, List, Any, Dict, Mapping
from datetime import datetime

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request as FastAPIRequest
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, field_validator
from sqlalchemy import create_engine, Column, Integer, String, Text, DateTime, func, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from video_links import Platform, get_embed_link, is_valid_url

# =====================================
# Config
# =====================================
# Defaults to a SQLite file next to the working directory, matching the
# single-instance deployment.
DB_URL = os.getenv("DB_URL", "sqlite:///db.sqlite")

# Shared secret the bot sends when it writes submissions.
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "change-me")

PUBLIC_DIR = Path(os.getenv("PUBLIC_DIR", str(Path(__file__).resolve().parent / "public")))

API_VERSION = "0.1.0"

logger = logging.getLogger(__name__)

engine = create_engine(DB_URL, connect_args={"check_same_thread": False} if DB_URL.startswith("sqlite") else {})
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


class Video(Base):
    __tablename__ = "videos"

    id = Column(Integer, primary_key=True, autoincrement=True)
    url = Column(Text, nullable=False, unique=True)
    platform = Column(String, nullable=False, default="other")
    # Column name kept from databases created before the submitter rename.
    submitter = Column("user", String)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


Base.metadata.create_all(bind=engine)


def ensure_videos_schema() -> None:
    """Add the URL uniqueness guarantee to databases created without it.

    Dependencies: Uses SQLAlchemy `inspect` against the global `engine` and raw
    SQL executed inside `engine.begin()`.
    Code customers: Runs at import so the insert path can rely on the database
    rejecting duplicate URLs.
    Used variables/origin: Reads the `videos` table metadata; when no unique
    index covers `url`, keeps the oldest row per URL and creates `ux_videos_url`.
    """

    inspector = inspect(engine)
    if "videos" not in inspector.get_table_names():
        return
    for constraint in inspector.get_unique_constraints("videos"):
        if constraint.get("column_names") == ["url"]:
            return
    for index in inspector.get_indexes("videos"):
        if index.get("unique") and index.get("column_names") == ["url"]:
            return
    with engine.begin() as conn:
        removed = conn.execute(
            text("DELETE FROM videos WHERE id NOT IN (SELECT MIN(id) FROM videos GROUP BY url)")
        ).rowcount
        conn.execute(text("CREATE UNIQUE INDEX IF NOT EXISTS ux_videos_url ON videos (url)"))
    if removed:
        logger.warning("Collapsed %s duplicate video rows while adding the url index", removed)


ensure_videos_schema()

# =====================================
# Schemas
# =====================================
class VideoIn(BaseModel):
    url: str
    platform: Platform = "other"
    submitter: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _strip_url(cls, value: str) -> str:
        return value.strip()


class VideoOut(BaseModel):
    id: int
    url: str
    platform: str
    submitter: Optional[str]
    created_at: datetime
    embed: str

    class Config:
        from_attributes = True


class OkOut(BaseModel):
    ok: bool = True

# =====================================
# Video store
# =====================================
class DuplicateVideoError(Exception):
    def __init__(self, url: str):
        super().__init__(f"video already queued: {url}")
        self.url = url


def _serialize_video(video: Video) -> Dict[str, Any]:
    return {
        "id": video.id,
        "url": video.url,
        "platform": video.platform,
        "submitter": video.submitter,
        "created_at": video.created_at,
        "embed": get_embed_link(video.url, video.platform),
    }


def find_video_by_url(db: Session, url: str) -> Optional[Video]:
    return db.query(Video).filter(Video.url == url).one_or_none()


def insert_video(db: Session, url: str, platform: str, submitter: Optional[str]) -> Video:
    """Persist a new submission, relying on the unique index to reject repeats.

    Dependencies: an open SQLAlchemy session bound to the global engine.
    Code customers: the `POST /api/videos` route used by the chat bot.
    Used variables/origin: `url`, `platform` and `submitter` come straight from
    the bot; `platform` is stored as given and never recomputed.
    """

    video = Video(url=url, platform=platform, submitter=submitter)
    db.add(video)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateVideoError(url) from None
    db.refresh(video)
    return video


def list_videos(db: Session) -> List[Dict[str, Any]]:
    rows = db.query(Video).order_by(Video.created_at.asc(), Video.id.asc()).all()
    return [_serialize_video(v) for v in rows]


def delete_video(db: Session, video_id: int) -> None:
    db.query(Video).filter(Video.id == video_id).delete()
    db.commit()


def clear_videos(db: Session) -> None:
    db.query(Video).delete()
    db.commit()
    if engine.dialect.name == "sqlite":
        # VACUUM cannot run inside a transaction.
        with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.execute(text("VACUUM"))

# =====================================
# FastAPI app and deps
# =====================================
app = FastAPI(title="Chat Video Queue Backend", version=API_VERSION)

DEFAULT_CORS_ALLOW_ORIGIN_REGEX = r"https?://.*"


def _parse_cors_origins(raw: str) -> list[str]:
    """Return the origins listed in an environment value.

    Commas and whitespace both separate entries, and a trailing slash is
    dropped because browsers never send one in the ``Origin`` header.
    """

    if not raw:
        return []

    origins: list[str] = []
    for part in re.split(r"[\s,]+", raw):
        origin = part.strip().rstrip("/")
        if origin:
            origins.append(origin)
    return origins


def _cors_settings_from_env(env: Mapping[str, str]) -> tuple[list[str], Optional[str]]:
    origins = _parse_cors_origins(env.get("CORS_ALLOW_ORIGINS", ""))

    allow_origins: list[str] = []
    regex_fragments: list[str] = []
    for origin in origins:
        if "*" not in origin:
            allow_origins.append(origin)
            continue
        # A wildcard matches one host label run but never crosses a path separator.
        regex_fragments.append(re.escape(origin).replace(r"\*", r"[^/]+"))

    configured_regex = env.get("CORS_ALLOW_ORIGIN_REGEX", "")
    if configured_regex:
        regex_fragments.append(configured_regex)
    elif not allow_origins and not regex_fragments:
        regex_fragments.append(DEFAULT_CORS_ALLOW_ORIGIN_REGEX)

    allow_origin_regex = None
    if regex_fragments:
        allow_origin_regex = f"^(?:{'|'.join(regex_fragments)})$"
    return allow_origins, allow_origin_regex


allow_origins, allow_origin_regex = _cors_settings_from_env(os.environ)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_origin_regex=allow_origin_regex,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SQLAlchemyError)
async def storage_failure_handler(request: FastAPIRequest, exc: SQLAlchemyError):
    logger.error("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "storage failure"})


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_token(x_admin_token: str = Header(None)):
    if x_admin_token != ADMIN_TOKEN:
        raise HTTPException(status_code=401, detail="invalid admin token")

# =====================================
# Routes: System
# =====================================
@app.get("/system/health")
def health(db: Session = Depends(get_db)):
    try:
        count = db.query(func.count(Video.id)).scalar()
    except SQLAlchemyError as e:
        raise HTTPException(500, detail=str(e))
    return {"status": "ok", "videos": count}

# =====================================
# Routes: Videos
# =====================================
@app.get("/api/videos", response_model=List[VideoOut])
def get_videos(db: Session = Depends(get_db)):
    return list_videos(db)


@app.get("/api/videos/lookup", response_model=VideoOut)
def lookup_video(url: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    video = find_video_by_url(db, url)
    if not video:
        raise HTTPException(404, detail="video not found")
    return _serialize_video(video)


@app.post("/api/videos", response_model=VideoOut, dependencies=[Depends(require_token)])
def add_video(payload: VideoIn, db: Session = Depends(get_db)):
    if not is_valid_url(payload.url):
        raise HTTPException(400, detail="invalid url")
    try:
        video = insert_video(db, payload.url, payload.platform, payload.submitter)
    except DuplicateVideoError:
        raise HTTPException(409, detail="video already in the list")
    logger.info("Queued %s video %s from %s", video.platform, video.id, video.submitter)
    return _serialize_video(video)


@app.delete("/api/videos/{video_id}", response_model=OkOut)
def remove_video(video_id: str, db: Session = Depends(get_db)):
    # Ids that are not numbers cannot match a row.
    if video_id.isascii() and video_id.isdigit():
        delete_video(db, int(video_id))
    return {"ok": True}


@app.post("/api/clear", response_model=OkOut)
def clear_all_videos(db: Session = Depends(get_db)):
    clear_videos(db)
    logger.info("Cleared the video list")
    return {"ok": True}


# Mounted last so the API routes take precedence over the static page.
if PUBLIC_DIR.is_dir():
    app.mount("/", StaticFiles(directory=str(PUBLIC_DIR), html=True), name="public")


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "3000")))
