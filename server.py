import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from classes.GCConnection_hlpr import GCConnection
from classes.approval_linker import ApprovalLinker
from classes.errors import FunctionError, StoreError
from classes.memorial_service import MemorialService
from classes.memorial_store import MemorialStore
from classes.tribute_service import TributeService

logger = logging.getLogger("headstone_backend")


class ServerContext:
    """
    Everything a request handler needs, built once per app instance.
    """

    def __init__(self, session_factory, *, gc_connection=None, clock=None, bio_llm=None,
                 linker_options: Optional[Dict[str, Any]] = None):
        self.store = MemorialStore(session_factory, clock=clock)
        self.service = MemorialService(self.store, gc_connection=gc_connection, bio_llm=bio_llm)
        self.linker = ApprovalLinker(self.store, **(linker_options or {}))
        self.tributes = TributeService(self.store)

    @classmethod
    def from_env(cls) -> "ServerContext":
        gc = GCConnection()
        return cls(gc.build_db_session_factory(), gc_connection=gc)


# --- Request bodies (callable-function style, camelCase as sent by the web app) ---

class ApproveAndLinkRequest(BaseModel):
    submissionId: Optional[str] = None
    curatorId: Optional[str] = None


class UpgradeTierRequest(BaseModel):
    memorialId: Optional[str] = None
    newTier: Optional[str] = None


class GeocodeRequest(BaseModel):
    address: Optional[str] = None


class GenerateBioRequest(BaseModel):
    name: Optional[str] = None
    promptData: Optional[Any] = None


class TranscribeRequest(BaseModel):
    imageUrl: Optional[str] = None


class PinRequest(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None


class ScoutSubmissionRequest(BaseModel):
    memorial: Dict[str, Any] = {}
    contributor: Optional[Dict[str, Any]] = None


def create_app(context: Optional[ServerContext] = None) -> FastAPI:
    app = FastAPI(title="Headstone Legacy backend")
    app.state.context = context

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins for dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FunctionError)
    async def _function_error(request: Request, exc: FunctionError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(StoreError)
    async def _store_error(request: Request, exc: StoreError):
        logger.error(f"Store error on {request.url.path}: {exc}")
        err = FunctionError(FunctionError.INTERNAL, "The request could not be completed.")
        return JSONResponse(status_code=err.http_status, content=err.to_dict())

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):
        logger.error(f"Unexpected error on {request.url.path}: {exc}\n{traceback.format_exc()}")
        err = FunctionError(FunctionError.INTERNAL, "Internal error.")
        return JSONResponse(status_code=err.http_status, content=err.to_dict())

    def get_context(request: Request) -> ServerContext:
        if request.app.state.context is None:
            request.app.state.context = ServerContext.from_env()
        return request.app.state.context

    # --- Callable functions ---

    @app.post("/functions/approveAndLinkSubmission")
    def approve_and_link_submission(
        body: ApproveAndLinkRequest,
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return ctx.linker.approve_and_link(x_auth_uid, body.submissionId, body.curatorId)

    @app.post("/functions/upgradeMemorialTier")
    def upgrade_memorial_tier(
        body: UpgradeTierRequest,
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return ctx.service.upgrade_memorial_tier(x_auth_uid, body.memorialId, body.newTier)

    @app.post("/functions/geocodeAddress")
    def geocode_address(body: GeocodeRequest, ctx: ServerContext = Depends(get_context)):
        return ctx.service.geocode_address(body.address)

    @app.post("/functions/generateBioFromPrompts")
    def generate_bio_from_prompts(
        body: GenerateBioRequest,
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return ctx.service.generate_bio(x_auth_uid, body.name, body.promptData)

    @app.post("/functions/transcribeHeadstoneImage")
    def transcribe_headstone_image(
        body: TranscribeRequest,
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return ctx.service.transcribe_headstone_image(x_auth_uid, body.imageUrl)

    # --- Memorials ---

    @app.get("/memorials/search")
    def search_memorials(q: str = "", ctx: ServerContext = Depends(get_context)):
        return {"results": ctx.service.search_memorials(q)}

    @app.get("/memorials/recent")
    def recent_memorials(ctx: ServerContext = Depends(get_context)):
        return {"results": ctx.service.list_recent_memorials()}

    @app.get("/memorials/map")
    def memorial_map(ctx: ServerContext = Depends(get_context)):
        return ctx.service.list_map_memorials()

    @app.get("/memorials/{memorial_id}")
    def get_memorial(memorial_id: str, ctx: ServerContext = Depends(get_context)):
        memorial = ctx.store.get(memorial_id)
        if memorial is None:
            raise FunctionError(FunctionError.NOT_FOUND, "No memorial found with that ID.")
        return memorial

    @app.post("/memorials")
    def create_memorial(
        body: Dict[str, Any],
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return ctx.service.save_memorial(x_auth_uid, body)

    @app.put("/memorials/{memorial_id}")
    def save_memorial(
        memorial_id: str,
        body: Dict[str, Any],
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return ctx.service.save_memorial(x_auth_uid, body, memorial_id=memorial_id)

    @app.delete("/memorials/{memorial_id}")
    def delete_memorial(
        memorial_id: str,
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        result = ctx.service.delete_memorial(x_auth_uid, memorial_id)
        ctx.tributes.delete_for_memorial(memorial_id)
        return result

    @app.post("/memorials/{memorial_id}/photos")
    async def upload_photo(
        memorial_id: str,
        request: Request,
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        data = await request.body()
        content_type = request.headers.get("content-type") or "image/jpeg"
        return ctx.service.attach_photo(x_auth_uid, memorial_id, data, content_type=content_type)

    # --- Curator panel ---

    @app.get("/curator/memorials")
    def curator_memorials(
        status: Optional[str] = None,
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return {"results": ctx.service.list_curator_memorials(x_auth_uid, status)}

    @app.get("/curator/pending")
    def pending_submissions(
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return {"results": ctx.service.list_pending_submissions(x_auth_uid)}

    # --- Scout mode ---

    @app.post("/scout/pins")
    def save_pin(
        body: PinRequest,
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return ctx.service.save_pin_as_draft(x_auth_uid, body.lat, body.lng)

    @app.post("/scout/submissions")
    def submit_scout(
        body: ScoutSubmissionRequest,
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return ctx.service.submit_scout_memorial(x_auth_uid, body.memorial, body.contributor)

    # --- Tributes ---

    @app.get("/memorials/{memorial_id}/tributes")
    def memorial_tributes(memorial_id: str, ctx: ServerContext = Depends(get_context)):
        return {"results": ctx.tributes.list_tributes(memorial_id)}

    @app.post("/memorials/{memorial_id}/tributes")
    def submit_tribute(
        memorial_id: str,
        body: Dict[str, Any],
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return ctx.tributes.submit_tribute(x_auth_uid, memorial_id, body)

    @app.get("/curator/tributes")
    def pending_tributes(
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return {"results": ctx.tributes.list_pending_tributes(x_auth_uid)}

    @app.post("/curator/tributes/{tribute_id}/approve")
    def approve_tribute(
        tribute_id: str,
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return ctx.tributes.approve_tribute(x_auth_uid, tribute_id)

    @app.delete("/curator/tributes/{tribute_id}")
    def reject_tribute(
        tribute_id: str,
        x_auth_uid: Optional[str] = Header(default=None),
        ctx: ServerContext = Depends(get_context),
    ):
        return ctx.tributes.reject_tribute(x_auth_uid, tribute_id)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
