import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import operations as ops
from auth import LOGGED_OUT_COOKIE, authenticate
from config import Settings, get_settings
from context import RequestContext, build_context
from database import check_database_health, close_client, ensure_indexes, get_db
from errors import AppError
from mailer import Mailer, get_mailer
from schemas import (
    ForgotPasswordInput,
    LoginInput,
    OrderInput,
    OrderUpdateInput,
    PaymentIntentInput,
    PreferencesInput,
    PreferencesUpdateInput,
    ProductInput,
    ProductUpdateInput,
    RegisterInput,
    ResetPasswordInput,
    ReviewInput,
    ReviewUpdateInput,
    UpdatePasswordInput,
    UpdateUserInput,
)

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Storefront API...")
    await ensure_indexes(get_db())
    yield
    logger.info("Shutting down Storefront API...")
    await close_client()


# App and CORS
app = FastAPI(title="Storefront API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Request context

async def get_context(
    request: Request,
    db=Depends(get_db),
    settings: Settings = Depends(get_settings),
    mailer: Mailer = Depends(get_mailer),
) -> RequestContext:
    user = await authenticate(
        db,
        settings,
        request.headers.get("authorization"),
        request.cookies.get(settings.cookie_name),
    )
    return build_context(db, settings, mailer, user)


async def get_public_context(
    db=Depends(get_db),
    settings: Settings = Depends(get_settings),
    mailer: Mailer = Depends(get_mailer),
) -> RequestContext:
    """Context for the credential routes, which never read the presented session."""
    return build_context(db, settings, mailer)


def set_session_cookie(response: Response, settings: Settings, token: str) -> None:
    # the cookie must not outlive the token it carries
    response.set_cookie(
        settings.cookie_name,
        token,
        expires=datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expire_minutes),
        httponly=True,
        secure=settings.is_production,
    )


# Auth Routes
@app.post("/api/v1/auth/register")
async def register(payload: RegisterInput, response: Response, ctx: RequestContext = Depends(get_public_context)):
    result = await ops.register(ctx, payload)
    set_session_cookie(response, ctx.settings, result["token"])
    return result


@app.post("/api/v1/auth/login")
async def login(payload: LoginInput, response: Response, ctx: RequestContext = Depends(get_public_context)):
    result = await ops.login(ctx, payload)
    set_session_cookie(response, ctx.settings, result["token"])
    return result


@app.get("/api/v1/auth/logout")
async def logout(response: Response, settings: Settings = Depends(get_settings)):
    response.set_cookie(
        settings.cookie_name,
        LOGGED_OUT_COOKIE,
        expires=datetime.now(timezone.utc) + timedelta(seconds=10),
        httponly=True,
    )
    return await ops.logout()


@app.get("/api/v1/auth/me")
async def me(ctx: RequestContext = Depends(get_context)):
    return await ops.get_me(ctx)


@app.post("/api/v1/auth/forgotpassword")
async def forgot_password(payload: ForgotPasswordInput, request: Request, ctx: RequestContext = Depends(get_public_context)):
    reset_url_base = f"{str(request.base_url).rstrip('/')}/api/v1/auth/resetpassword"
    return await ops.forgot_password(ctx, payload, reset_url_base)


@app.put("/api/v1/auth/resetpassword/{reset_token}")
async def reset_password(
    reset_token: str,
    payload: ResetPasswordInput,
    response: Response,
    ctx: RequestContext = Depends(get_public_context),
):
    result = await ops.reset_password(ctx, reset_token, payload)
    set_session_cookie(response, ctx.settings, result["token"])
    return result


@app.put("/api/v1/auth/updatepassword")
async def update_password(payload: UpdatePasswordInput, response: Response, ctx: RequestContext = Depends(get_context)):
    result = await ops.update_password(ctx, payload)
    set_session_cookie(response, ctx.settings, result["token"])
    return result


# Users
@app.get("/api/v1/users")
async def list_users(ctx: RequestContext = Depends(get_context)):
    return await ops.list_users(ctx)


@app.get("/api/v1/users/{user_id}")
async def get_user(user_id: str, ctx: RequestContext = Depends(get_context)):
    return await ops.get_user(ctx, user_id)


@app.put("/api/v1/users/{user_id}")
async def update_user(user_id: str, payload: UpdateUserInput, ctx: RequestContext = Depends(get_context)):
    return await ops.update_user(ctx, user_id, payload)


@app.delete("/api/v1/users/{user_id}")
async def delete_user(user_id: str, ctx: RequestContext = Depends(get_context)):
    return await ops.delete_user(ctx, user_id)


# Products
@app.get("/api/v1/products")
async def list_products(
    category: Optional[str] = None,
    keyword: Optional[str] = None,
    ctx: RequestContext = Depends(get_context),
):
    return await ops.list_products(ctx, category=category, keyword=keyword)


@app.post("/api/v1/products")
async def create_product(payload: ProductInput, ctx: RequestContext = Depends(get_context)):
    return await ops.create_product(ctx, payload)


@app.get("/api/v1/products/{product_id}")
async def get_product(product_id: str, ctx: RequestContext = Depends(get_context)):
    return await ops.get_product(ctx, product_id)


@app.put("/api/v1/products/{product_id}")
async def update_product(product_id: str, payload: ProductUpdateInput, ctx: RequestContext = Depends(get_context)):
    return await ops.update_product(ctx, product_id, payload)


@app.delete("/api/v1/products/{product_id}")
async def delete_product(product_id: str, ctx: RequestContext = Depends(get_context)):
    return await ops.delete_product(ctx, product_id)


# Reviews
@app.get("/api/v1/products/{product_id}/reviews")
async def get_product_reviews(product_id: str, ctx: RequestContext = Depends(get_context)):
    return await ops.get_product_reviews(ctx, product_id)


@app.post("/api/v1/products/{product_id}/reviews")
async def create_review(product_id: str, payload: ReviewInput, ctx: RequestContext = Depends(get_context)):
    return await ops.create_review(ctx, product_id, payload)


@app.get("/api/v1/reviews")
async def list_reviews(product: Optional[str] = None, ctx: RequestContext = Depends(get_context)):
    return await ops.list_reviews(ctx, product_id=product)


@app.get("/api/v1/reviews/{review_id}")
async def get_review(review_id: str, ctx: RequestContext = Depends(get_context)):
    return await ops.get_review(ctx, review_id)


@app.put("/api/v1/reviews/{review_id}")
async def update_review(review_id: str, payload: ReviewUpdateInput, ctx: RequestContext = Depends(get_context)):
    return await ops.update_review(ctx, review_id, payload)


@app.delete("/api/v1/reviews/{review_id}")
async def delete_review(review_id: str, ctx: RequestContext = Depends(get_context)):
    return await ops.delete_review(ctx, review_id)


# Orders
@app.get("/api/v1/orders")
async def list_orders(ctx: RequestContext = Depends(get_context)):
    return await ops.list_orders(ctx)


@app.post("/api/v1/orders")
async def create_order(payload: OrderInput, ctx: RequestContext = Depends(get_context)):
    return await ops.create_order(ctx, payload)


@app.get("/api/v1/orders/{order_id}")
async def get_order(order_id: str, ctx: RequestContext = Depends(get_context)):
    return await ops.get_order(ctx, order_id)


@app.put("/api/v1/orders/{order_id}")
async def update_order(order_id: str, payload: OrderUpdateInput, ctx: RequestContext = Depends(get_context)):
    return await ops.update_order(ctx, order_id, payload)


@app.delete("/api/v1/orders/{order_id}")
async def delete_order(order_id: str, ctx: RequestContext = Depends(get_context)):
    return await ops.delete_order(ctx, order_id)


# Preferences
@app.get("/api/v1/preferences")
async def get_preferences(ctx: RequestContext = Depends(get_context)):
    return await ops.get_preferences(ctx)


@app.post("/api/v1/preferences")
async def create_preferences(payload: PreferencesInput, ctx: RequestContext = Depends(get_context)):
    return await ops.create_preferences(ctx, payload)


@app.put("/api/v1/preferences")
async def update_preferences(payload: PreferencesUpdateInput, ctx: RequestContext = Depends(get_context)):
    return await ops.update_preferences(ctx, payload)


@app.delete("/api/v1/preferences")
async def delete_preferences(ctx: RequestContext = Depends(get_context)):
    return await ops.delete_preferences(ctx)


# Payments
@app.post("/api/v1/payments/intent")
async def create_payment_intent(payload: PaymentIntentInput, ctx: RequestContext = Depends(get_context)):
    return await ops.create_payment_intent(ctx, payload)


# Bootstrap route for first deployment
@app.post("/init/bootstrap")
async def bootstrap_admin(payload: RegisterInput, ctx: RequestContext = Depends(get_public_context)):
    """Create the first admin if none exists."""
    return await ops.bootstrap_admin(ctx, payload)


# Utility endpoints
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/health")
async def health(db=Depends(get_db)):
    healthy = await check_database_health(db)
    return {"backend": "ok", "database": "connected" if healthy else "disconnected"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
