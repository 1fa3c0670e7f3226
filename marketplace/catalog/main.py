"""
Catalog Service — FastAPI entry point

Profiles, products, reviews and the admin console (store verification,
moderation, app settings), plus the two content helpers stores use while
listing products: AI descriptions and image upload.

Run with:  uvicorn marketplace.catalog.main:create_app --factory
"""

from fastapi import Depends, FastAPI, File, Request, UploadFile
from pydantic import BaseModel

from ..actors import Actor, Operation, Role, authorize
from ..app_settings import load_app_settings
from ..config import Settings, get_settings
from ..errors import ProfileNotFoundError
from ..geo import Coordinates
from ..integrations.storage import ImageStorage
from ..integrations.textgen import TextGenerator
from ..web import current_actor, install_error_handlers, make_lifespan
from . import commands, queries


# ── Request Models ───────────────────────────────

class RegisterProfileRequest(BaseModel):
    name: str
    phone: str = ""
    image_url: str = ""
    category: str | None = None
    location: str = ""
    coordinates: Coordinates | None = None


class UpdateProfileRequest(BaseModel):
    name: str | None = None
    phone: str | None = None
    image_url: str | None = None


class TokenRequest(BaseModel):
    token: str


class VerifyStoreRequest(BaseModel):
    verified: bool = True


class AddProductRequest(BaseModel):
    name: str
    price: float
    description: str = ""
    category: str | None = None
    image_url: str = ""


class DescribeRequest(BaseModel):
    name: str
    category: str = ""


class AppSettingsRequest(BaseModel):
    is_locked: bool | None = None
    global_message: str | None = None
    delivery_base_fee: float | None = None


class ReviewRequest(BaseModel):
    target_role: Role
    target_id: str
    rating: int
    comment: str = ""
    order_id: str


def create_app(
    settings: Settings | None = None,
    text_generator: TextGenerator | None = None,
    image_storage: ImageStorage | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Catalog Service", lifespan=make_lifespan(settings, with_redis=False))
    app.state.text_generator = text_generator or TextGenerator(settings)
    app.state.image_storage = image_storage or ImageStorage(settings)
    install_error_handlers(app)

    # ── Command Endpoints (write side) ────────────

    @app.post("/commands/profiles")
    async def cmd_register(req: RegisterProfileRequest, request: Request, actor: Actor = Depends(current_actor)):
        fields = req.model_dump(exclude={"coordinates"})
        async with request.app.state.sessions() as session:
            return await commands.register_profile(
                session, actor, coordinates=req.coordinates, **fields
            )

    @app.patch("/commands/profiles/me")
    async def cmd_update_profile(req: UpdateProfileRequest, request: Request, actor: Actor = Depends(current_actor)):
        async with request.app.state.sessions() as session:
            await commands.update_profile(session, actor, **req.model_dump())
        return {"status": "ok"}

    @app.put("/commands/profiles/me/location")
    async def cmd_update_location(req: Coordinates, request: Request, actor: Actor = Depends(current_actor)):
        async with request.app.state.sessions() as session:
            await commands.update_coordinates(session, actor, req)
        return {"status": "ok"}

    @app.put("/commands/profiles/me/fcm-token")
    async def cmd_set_token(req: TokenRequest, request: Request, actor: Actor = Depends(current_actor)):
        async with request.app.state.sessions() as session:
            await commands.set_fcm_token(session, actor, req.token)
        return {"status": "ok"}

    @app.post("/commands/stores/{store_id}/verify")
    async def cmd_verify_store(
        store_id: str,
        req: VerifyStoreRequest,
        request: Request,
        actor: Actor = Depends(current_actor),
    ):
        async with request.app.state.sessions() as session:
            await commands.verify_store(session, actor, store_id, req.verified)
        return {"store_id": store_id, "is_verified": req.verified}

    @app.delete("/commands/profiles/{role}/{profile_id}")
    async def cmd_delete_profile(role: Role, profile_id: str, request: Request, actor: Actor = Depends(current_actor)):
        async with request.app.state.sessions() as session:
            await commands.delete_profile(session, actor, role, profile_id)
        return {"status": "deleted", "role": role.value, "id": profile_id}

    @app.patch("/commands/app-settings")
    async def cmd_update_app_settings(req: AppSettingsRequest, request: Request, actor: Actor = Depends(current_actor)):
        async with request.app.state.sessions() as session:
            return await commands.update_app_settings(session, actor, **req.model_dump())

    @app.post("/commands/products")
    async def cmd_add_product(req: AddProductRequest, request: Request, actor: Actor = Depends(current_actor)):
        async with request.app.state.sessions() as session:
            return await commands.add_product(session, actor, **req.model_dump())

    @app.delete("/commands/products/{product_id}")
    async def cmd_remove_product(product_id: str, request: Request, actor: Actor = Depends(current_actor)):
        async with request.app.state.sessions() as session:
            await commands.remove_product(session, actor, product_id)
        return {"status": "deleted", "id": product_id}

    @app.post("/commands/products/describe")
    async def cmd_describe_product(req: DescribeRequest, request: Request, actor: Actor = Depends(current_actor)):
        """Suggest a marketing description for a product being listed."""
        authorize(actor, Operation.MANAGE_PRODUCTS)
        description = await request.app.state.text_generator.describe(req.name, req.category)
        return {"description": description}

    @app.post("/commands/uploads")
    async def cmd_upload_image(
        request: Request,
        file: UploadFile = File(...),
        actor: Actor = Depends(current_actor),
    ):
        """Upload a profile or product image; only the returned URL is ever stored."""
        content = await file.read()
        url = await request.app.state.image_storage.upload(
            content, file.filename or "upload", file.content_type or "image/jpeg"
        )
        return {"url": url}

    @app.post("/commands/reviews")
    async def cmd_submit_review(req: ReviewRequest, request: Request, actor: Actor = Depends(current_actor)):
        async with request.app.state.sessions() as session:
            return await commands.submit_review(
                session, actor,
                req.target_role, req.target_id, req.rating,
                order_id=req.order_id,
                comment=req.comment,
                max_attempts=request.app.state.settings.rating_max_attempts,
            )

    # ── Query Endpoints (read side) ───────────────

    @app.get("/queries/profiles")
    async def query_list_profiles(role: Role, request: Request):
        async with request.app.state.sessions() as session:
            return await queries.list_profiles(session, role)

    @app.get("/queries/profiles/{role}/{profile_id}")
    async def query_get_profile(role: Role, profile_id: str, request: Request):
        async with request.app.state.sessions() as session:
            profile = await queries.get_profile(session, role, profile_id)
        if not profile:
            raise ProfileNotFoundError(f"{role.value} {profile_id} not found")
        return profile

    @app.get("/queries/stores")
    async def query_list_stores(request: Request, category: str | None = None, verified_only: bool = False):
        async with request.app.state.sessions() as session:
            return await queries.list_stores(session, category, verified_only)

    @app.get("/queries/products")
    async def query_list_products(request: Request, store_id: str | None = None, category: str | None = None):
        async with request.app.state.sessions() as session:
            return await queries.list_products(session, store_id, category)

    @app.get("/queries/reviews/{role}/{target_id}")
    async def query_list_reviews(role: Role, target_id: str, request: Request):
        async with request.app.state.sessions() as session:
            return await queries.list_reviews(session, role, target_id)

    @app.get("/queries/app-settings")
    async def query_app_settings(request: Request):
        """Lock state and broadcast message, polled by every client."""
        async with request.app.state.sessions() as session:
            return await load_app_settings(session)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "catalog-service"}

    return app
