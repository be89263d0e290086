"""Query and mutation handlers.

Every handler takes the request context first. Access rules are declared with
``@requires``; handlers without it are public. Ownership checks happen inside
the handler once the owning document has been read.
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from aggregation import recompute_product_rating
from auth import (
    ADMIN,
    CUSTOMER,
    generate_reset_token,
    hash_password,
    hash_reset_token,
    is_admin,
    issue_token,
    require_owner,
    requires,
    verify_password,
)
from database import (
    USER_PRIVATE_FIELDS,
    USER_PUBLIC_PROJECTION,
    as_utc,
    create_document,
    now,
    sanitize,
    to_obj_id,
)
from errors import Conflict, DuplicateReview, Forbidden, InvalidOrExpiredToken, NotFound, Unauthorized, UpstreamFailure
from mailer import MailerError
import payments
from schemas import (
    Order as OrderSchema,
    OrderItem as OrderItemSchema,
    Preferences as PreferencesSchema,
    Product as ProductSchema,
    Review as ReviewSchema,
    User as UserSchema,
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

logger = logging.getLogger(__name__)


# Helpers

def public_user(doc: Dict) -> Dict:
    user = sanitize(doc)
    for field in USER_PRIVATE_FIELDS:
        user.pop(field, None)
    return user


def new_user(payload: RegisterInput, role: str) -> Dict[str, Any]:
    return UserSchema(
        name=payload.name,
        email=payload.email,
        role=role,
        address=payload.address,
        password_hash=hash_password(payload.password),
    ).model_dump()


def envelope(message: str, success: bool = True) -> Dict[str, Any]:
    return {"success": success, "message": message}


def token_response(ctx, user: Dict) -> Dict[str, Any]:
    return {"success": True, "token": issue_token(user["id"], ctx.settings), "user": user}


async def find_or_404(db, collection: str, id_str: str, label: str, projection=None) -> Dict:
    doc = await db[collection].find_one({"_id": to_obj_id(id_str)}, projection)
    if not doc:
        raise NotFound(f"{label} not found with id of {id_str}")
    return sanitize(doc)


def forget_product(ctx, product_id: str) -> None:
    ctx.loaders.products.clear(product_id)
    ctx.loaders.reviews.clear(product_id)


# Auth

async def register(ctx, payload: RegisterInput) -> Dict[str, Any]:
    if await ctx.db["user"].find_one({"email": payload.email}):
        raise Conflict("Email already registered")
    try:
        user = await create_document(ctx.db, "user", new_user(payload, CUSTOMER))
    except DuplicateKeyError:
        raise Conflict("Email already registered")
    logger.info(f"Registered user {user['id']}")
    return token_response(ctx, public_user(user))


async def login(ctx, payload: LoginInput) -> Dict[str, Any]:
    user = await ctx.db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise Unauthorized("Invalid credentials")
    return token_response(ctx, public_user(user))


async def logout() -> Dict[str, Any]:
    return envelope("Logout successful")


@requires()
async def get_me(ctx) -> Dict:
    return ctx.user


async def bootstrap_admin(ctx, payload: RegisterInput) -> Dict[str, Any]:
    """Create the first admin account. Only allowed while no admin exists."""
    if await ctx.db["user"].count_documents({"role": ADMIN}) > 0:
        raise Conflict("Admin already exists")
    if await ctx.db["user"].find_one({"email": payload.email}):
        raise Conflict("Email already registered")
    user = await create_document(ctx.db, "user", new_user(payload, ADMIN))
    logger.info(f"Bootstrapped admin {user['id']}")
    return public_user(user)


async def forgot_password(ctx, payload: ForgotPasswordInput, reset_url_base: str) -> Dict[str, Any]:
    user = await ctx.db["user"].find_one({"email": payload.email}, USER_PUBLIC_PROJECTION)
    if not user:
        raise NotFound("There is no user with that email")

    raw_token, hashed_token, expires_at = generate_reset_token(ctx.settings)
    await ctx.db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"reset_password_token": hashed_token, "reset_password_expire": expires_at}},
    )

    reset_url = f"{reset_url_base.rstrip('/')}/{raw_token}"
    message = (
        "You are receiving this email because you (or someone else) has requested "
        f"the reset of a password. Please make a PUT request to: \n\n {reset_url}"
    )
    try:
        await ctx.mailer.send(user["email"], "Password reset token", message)
    except MailerError:
        logger.exception(f"Reset email to user {user['_id']} failed, clearing reset token")
        await ctx.db["user"].update_one(
            {"_id": user["_id"]},
            {"$unset": {"reset_password_token": "", "reset_password_expire": ""}},
        )
        raise UpstreamFailure("Email could not be sent")
    return envelope("Email sent")


async def reset_password(ctx, reset_token: str, payload: ResetPasswordInput) -> Dict[str, Any]:
    user = await ctx.db["user"].find_one({"reset_password_token": hash_reset_token(reset_token)})
    if not user:
        raise InvalidOrExpiredToken("Invalid token")
    expires_at = user.get("reset_password_expire")
    if expires_at is None or as_utc(expires_at) <= now():
        await ctx.db["user"].update_one(
            {"_id": user["_id"]},
            {"$unset": {"reset_password_token": "", "reset_password_expire": ""}},
        )
        raise InvalidOrExpiredToken("Reset token has expired")

    await ctx.db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password_hash": hash_password(payload.password), "updated_at": now()},
            "$unset": {"reset_password_token": "", "reset_password_expire": ""},
        },
    )
    return token_response(ctx, public_user(user))


@requires()
async def update_password(ctx, payload: UpdatePasswordInput) -> Dict[str, Any]:
    user = await ctx.db["user"].find_one({"_id": to_obj_id(ctx.user["id"])})
    if not user:
        raise NotFound("User not found")
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise Unauthorized("Password is incorrect")
    await ctx.db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": now()}},
    )
    return token_response(ctx, public_user(user))


# Users

@requires(ADMIN)
async def list_users(ctx) -> List[Dict]:
    docs = await ctx.db["user"].find({}, USER_PUBLIC_PROJECTION).sort("created_at", -1).to_list(None)
    return [sanitize(d) for d in docs]


@requires()
async def get_user(ctx, user_id: str) -> Dict:
    return await find_or_404(ctx.db, "user", user_id, "User", USER_PUBLIC_PROJECTION)


@requires()
async def update_user(ctx, user_id: str, payload: UpdateUserInput) -> Dict:
    require_owner(ctx.user, user_id, allow_admin=True)
    changes = payload.model_dump(exclude_unset=True)
    if "role" in changes and not is_admin(ctx.user):
        raise Forbidden("Only admins can change roles")
    await find_or_404(ctx.db, "user", user_id, "User", USER_PUBLIC_PROJECTION)

    if "email" in changes:
        other = await ctx.db["user"].find_one({"email": changes["email"]})
        if other and str(other["_id"]) != user_id:
            raise Conflict("Email already registered")
    changes["updated_at"] = now()
    try:
        await ctx.db["user"].update_one({"_id": to_obj_id(user_id)}, {"$set": changes})
    except DuplicateKeyError:
        raise Conflict("Email already registered")
    return await find_or_404(ctx.db, "user", user_id, "User", USER_PUBLIC_PROJECTION)


@requires(ADMIN)
async def delete_user(ctx, user_id: str) -> Dict[str, Any]:
    res = await ctx.db["user"].delete_one({"_id": to_obj_id(user_id)})
    if res.deleted_count == 0:
        raise NotFound(f"User not found with id of {user_id}")
    return envelope("User deleted successfully")


# Products

async def list_products(ctx, category: Optional[str] = None, keyword: Optional[str] = None) -> List[Dict]:
    q: Dict[str, Any] = {}
    if category:
        q["category"] = category
    if keyword:
        q["name"] = {"$regex": keyword, "$options": "i"}
    docs = await ctx.db["product"].find(q).sort("created_at", -1).to_list(None)
    products = [sanitize(d) for d in docs]
    for product in products:
        ctx.loaders.products.prime(product["id"], product)

    reviews = await ctx.loaders.reviews.load_many([p["id"] for p in products])
    return [{**product, "reviews": product_reviews} for product, product_reviews in zip(products, reviews)]


async def get_product(ctx, product_id: str) -> Dict:
    product = await ctx.loaders.products.load(product_id)
    if product is None:
        raise NotFound(f"Product not found with id of {product_id}")
    reviews = await ctx.loaders.reviews.load(product_id)
    return {**product, "reviews": reviews}


@requires(ADMIN)
async def create_product(ctx, payload: ProductInput) -> Dict:
    data = ProductSchema(**payload.model_dump(), user=ctx.user["id"]).model_dump()
    product = await create_document(ctx.db, "product", data)
    logger.info(f"Product {product['id']} created by {ctx.user['id']}")
    return product


@requires(ADMIN)
async def update_product(ctx, product_id: str, payload: ProductUpdateInput) -> Dict:
    changes = payload.model_dump(exclude_unset=True)
    changes["updated_at"] = now()
    res = await ctx.db["product"].update_one({"_id": to_obj_id(product_id)}, {"$set": changes})
    if res.matched_count == 0:
        raise NotFound(f"Product not found with id of {product_id}")
    forget_product(ctx, product_id)
    return await find_or_404(ctx.db, "product", product_id, "Product")


@requires(ADMIN)
async def delete_product(ctx, product_id: str) -> Dict[str, Any]:
    res = await ctx.db["product"].delete_one({"_id": to_obj_id(product_id)})
    if res.deleted_count == 0:
        raise NotFound(f"Product not found with id of {product_id}")
    forget_product(ctx, product_id)
    return envelope("Product deleted successfully")


# Reviews

async def list_reviews(ctx, product_id: Optional[str] = None) -> List[Dict]:
    q = {"product": product_id} if product_id else {}
    docs = await ctx.db["review"].find(q).sort("created_at", -1).to_list(None)
    return [sanitize(d) for d in docs]


async def get_review(ctx, review_id: str) -> Dict:
    return await find_or_404(ctx.db, "review", review_id, "Review")


async def get_product_reviews(ctx, product_id: str) -> List[Dict]:
    if await ctx.loaders.products.load(product_id) is None:
        raise NotFound(f"Product not found with id of {product_id}")
    return await ctx.loaders.reviews.load(product_id)


@requires()
async def create_review(ctx, product_id: str, payload: ReviewInput) -> Dict:
    if await ctx.loaders.products.load(product_id) is None:
        raise NotFound(f"Product not found with id of {product_id}")
    user_id = ctx.user["id"]
    if await ctx.db["review"].find_one({"user": user_id, "product": product_id}):
        raise DuplicateReview()

    data = ReviewSchema(**payload.model_dump(), product=product_id, user=user_id).model_dump()
    try:
        review = await create_document(ctx.db, "review", data)
    except DuplicateKeyError:
        raise DuplicateReview()

    await recompute_product_rating(ctx.db, product_id)
    forget_product(ctx, product_id)
    return review


@requires()
async def update_review(ctx, review_id: str, payload: ReviewUpdateInput) -> Dict:
    review = await find_or_404(ctx.db, "review", review_id, "Review")
    require_owner(ctx.user, review["user"])

    changes = payload.model_dump(exclude_unset=True)
    changes["updated_at"] = now()
    await ctx.db["review"].update_one({"_id": to_obj_id(review_id)}, {"$set": changes})

    await recompute_product_rating(ctx.db, review["product"])
    forget_product(ctx, review["product"])
    return await find_or_404(ctx.db, "review", review_id, "Review")


@requires()
async def delete_review(ctx, review_id: str) -> Dict[str, Any]:
    review = await find_or_404(ctx.db, "review", review_id, "Review")
    require_owner(ctx.user, review["user"], allow_admin=True)

    await ctx.db["review"].delete_one({"_id": to_obj_id(review_id)})
    await recompute_product_rating(ctx.db, review["product"])
    forget_product(ctx, review["product"])
    return envelope("Review deleted successfully")


# Orders

@requires()
async def list_orders(ctx) -> List[Dict]:
    q = {} if is_admin(ctx.user) else {"user": ctx.user["id"]}
    docs = await ctx.db["order"].find(q).sort("created_at", -1).to_list(None)
    return [sanitize(d) for d in docs]


@requires()
async def get_order(ctx, order_id: str) -> Dict:
    order = await find_or_404(ctx.db, "order", order_id, "Order")
    require_owner(ctx.user, order["user"], allow_admin=True)
    return order


@requires()
async def create_order(ctx, payload: OrderInput) -> Dict:
    product_ids = [item.product for item in payload.order_items]
    products = await ctx.loaders.products.load_many(product_ids)

    order_items = []
    total = 0.0
    for item, product in zip(payload.order_items, products):
        if product is None:
            raise NotFound(f"Product not found with id of {item.product}")
        price = float(product.get("price", 0))
        order_items.append(OrderItemSchema(
            product=item.product,
            name=product["name"],
            quantity=item.quantity,
            price=price,
            image_url=product.get("image_url"),
        ))
        total += price * item.quantity

    order = OrderSchema(
        user=ctx.user["id"],
        order_items=order_items,
        shipping_address=payload.shipping_address,
        payment_method=payload.payment_method,
        total_price=round(total, 2),
    )
    return await create_document(ctx.db, "order", order.model_dump())


@requires()
async def update_order(ctx, order_id: str, payload: OrderUpdateInput) -> Dict:
    order = await find_or_404(ctx.db, "order", order_id, "Order")
    require_owner(ctx.user, order["user"], allow_admin=True)

    changes = payload.model_dump(exclude_unset=True)
    if changes.get("is_paid") and not order.get("is_paid"):
        changes["paid_at"] = now()
    if changes.get("is_delivered") and not order.get("is_delivered"):
        changes["delivered_at"] = now()
    changes["updated_at"] = now()
    await ctx.db["order"].update_one({"_id": to_obj_id(order_id)}, {"$set": changes})
    return await find_or_404(ctx.db, "order", order_id, "Order")


@requires()
async def delete_order(ctx, order_id: str) -> Dict[str, Any]:
    order = await find_or_404(ctx.db, "order", order_id, "Order")
    require_owner(ctx.user, order["user"], allow_admin=True)
    await ctx.db["order"].delete_one({"_id": to_obj_id(order_id)})
    return envelope("Order deleted successfully")


# Preferences

async def _own_preferences(ctx) -> Dict:
    doc = await ctx.db["preferences"].find_one({"user": ctx.user["id"]})
    if not doc:
        raise NotFound("No preferences saved for this user")
    return sanitize(doc)


@requires()
async def get_preferences(ctx) -> Dict:
    return await _own_preferences(ctx)


@requires()
async def create_preferences(ctx, payload: PreferencesInput) -> Dict:
    if await ctx.db["preferences"].find_one({"user": ctx.user["id"]}):
        raise Conflict("Preferences already exist for this user")
    if payload.order:
        order = await find_or_404(ctx.db, "order", payload.order, "Order")
        require_owner(ctx.user, order["user"])
    data = PreferencesSchema(**payload.model_dump(), user=ctx.user["id"]).model_dump()
    try:
        return await create_document(ctx.db, "preferences", data)
    except DuplicateKeyError:
        raise Conflict("Preferences already exist for this user")


@requires()
async def update_preferences(ctx, payload: PreferencesUpdateInput) -> Dict:
    prefs = await _own_preferences(ctx)
    require_owner(ctx.user, prefs["user"])
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("order"):
        order = await find_or_404(ctx.db, "order", changes["order"], "Order")
        require_owner(ctx.user, order["user"])
    changes["updated_at"] = now()
    await ctx.db["preferences"].update_one({"_id": to_obj_id(prefs["id"])}, {"$set": changes})
    return await _own_preferences(ctx)


@requires()
async def delete_preferences(ctx) -> Dict[str, Any]:
    prefs = await _own_preferences(ctx)
    require_owner(ctx.user, prefs["user"])
    await ctx.db["preferences"].delete_one({"_id": to_obj_id(prefs["id"])})
    return envelope("Preferences deleted successfully")


# Payments

@requires()
async def create_payment_intent(ctx, payload: PaymentIntentInput) -> Dict[str, Any]:
    client_secret = await payments.create_payment_intent(
        ctx.settings,
        amount=payload.amount,
        currency=payload.currency,
        customer=payload.customer,
        description=payload.description,
        receipt_email=ctx.user.get("email"),
    )
    return {"success": True, "client_secret": client_secret}
