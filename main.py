import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo.errors import PyMongoError

import cart
import coupons
import database
import lifecycle
import orders
import payments
import settings
from errors import MarketplaceError

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        database.ensure_indexes()
    except PyMongoError as e:
        logger.warning("Could not create indexes at startup: %s", e)
    yield


app = FastAPI(title="Marketplace Orders API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "kind": exc.kind})

# ---------------------- Utilities ----------------------

def require_admin(x_admin_key: Optional[str]):
    if x_admin_key != settings.ADMIN_KEY:
        raise HTTPException(401, "Unauthorized")

# ---------------------- Models ----------------------

class CartLine(BaseModel):
    product_id: str
    quantity: int = 1

class QuantityBody(BaseModel):
    quantity: int

class CodeBody(BaseModel):
    code: str

class ApplyCouponBody(BaseModel):
    code: str
    items: List[CartLine]

class ApplyCouponsBody(BaseModel):
    codes: List[str]
    items: List[CartLine]

class ItemAddress(BaseModel):
    seller: str
    address: Dict[str, Any]

class CheckoutBody(BaseModel):
    shipping_address: Dict[str, Any]
    coupon_codes: List[str] = []
    item_addresses: List[ItemAddress] = []
    payment_method: str = "COD"
    notes: Optional[str] = None

class BuyNowBody(BaseModel):
    product_id: str
    quantity: int = 1
    shipping_address: Dict[str, Any]
    coupon_codes: List[str] = []
    payment_method: str = "COD"
    notes: Optional[str] = None

class ReasonBody(BaseModel):
    reason: Optional[str] = None

class ReturnBody(BaseModel):
    quantity: int = 1
    reason: str

class DisputeBody(BaseModel):
    reason: str
    item_id: Optional[str] = None

class StatusBody(BaseModel):
    status: str
    reason: Optional[str] = None

class TrackingBody(BaseModel):
    tracking_number: Optional[str] = None

class ReturnStatusBody(BaseModel):
    status: str
    admin_note: Optional[str] = None

class ResolveBody(BaseModel):
    outcome: str
    resolution: Optional[str] = None

class RollbackBody(BaseModel):
    user_id: str

class CouponBody(BaseModel):
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: float
    sellers: List[str] = []
    applicable_products: List[str] = []
    applicable_categories: List[str] = []
    min_cart_value: float = 0
    max_discount: Optional[float] = None
    max_usage: int = 1
    max_usage_per_user: int = 1
    stackable: bool = False
    max_stack_per_order: int = 1
    expiry_date: Optional[str] = None
    is_active: bool = True

class CouponUpdateBody(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[float] = None
    sellers: Optional[List[str]] = None
    applicable_products: Optional[List[str]] = None
    applicable_categories: Optional[List[str]] = None
    min_cart_value: Optional[float] = None
    max_discount: Optional[float] = None
    max_usage: Optional[int] = None
    max_usage_per_user: Optional[int] = None
    stackable: Optional[bool] = None
    max_stack_per_order: Optional[int] = None
    expiry_date: Optional[datetime] = None
    is_active: Optional[bool] = None

class PaymentVerifyBody(BaseModel):
    payment_order_id: str
    payment_id: str
    signature: Optional[str] = None
    succeeded: bool = True
    reason: Optional[str] = None

# ---------------------- Root & Health ----------------------

@app.get("/")
def read_root():
    return {"message": "Marketplace Orders API running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    db = database.get_db()
    if db is not None:
        response["database"] = "✅ Available"
        response["database_name"] = db.name
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response

# ---------------------- Cart ----------------------

@app.get("/cart")
def get_cart(user_id: str = Query(...)):
    c = cart.get_cart(user_id)
    return {**c.model_dump(by_alias=True), "cart_total": c.cart_total, "final_total": c.final_total}

@app.post("/cart/add")
def add_to_cart(item: CartLine, user_id: str = Query(...)):
    return cart.add_item(user_id, item.product_id, item.quantity)

@app.put("/cart/items/{item_id}")
def update_cart_item(item_id: str, body: QuantityBody, user_id: str = Query(...)):
    return cart.update_item(user_id, item_id, body.quantity)

@app.delete("/cart/items/{item_id}")
def remove_cart_item(item_id: str, user_id: str = Query(...)):
    return cart.remove_item(user_id, item_id)

@app.delete("/cart")
def clear_cart(user_id: str = Query(...)):
    return cart.clear_cart(user_id)

@app.post("/cart/coupon")
def apply_cart_coupon(body: CodeBody, user_id: str = Query(...)):
    return cart.apply_cart_coupon(user_id, body.code)

@app.delete("/cart/coupon")
def remove_cart_coupon(user_id: str = Query(...)):
    return cart.remove_cart_coupon(user_id)

# ---------------------- Coupons ----------------------

@app.get("/coupons/available")
def available_coupons(seller_id: Optional[str] = None, product_id: Optional[str] = None):
    return coupons.available_coupons(seller_id=seller_id, product_id=product_id)

@app.post("/coupons/apply")
def apply_coupon(body: ApplyCouponBody, user_id: str = Query(...)):
    return coupons.apply_coupon(user_id, body.code, [i.model_dump() for i in body.items])

@app.post("/coupons/apply-multiple")
def apply_coupons(body: ApplyCouponsBody, user_id: str = Query(...)):
    return coupons.apply_coupons(user_id, body.codes, [i.model_dump() for i in body.items])

@app.post("/admin/coupons")
def admin_create_coupon(body: CouponBody, x_admin_key: str = Header(None)):
    require_admin(x_admin_key)
    return coupons.create_coupon(body.model_dump(exclude_none=True))

@app.get("/admin/coupons")
def admin_list_coupons(x_admin_key: str = Header(None)):
    require_admin(x_admin_key)
    return coupons.list_coupons()

@app.put("/admin/coupons/{coupon_id}")
def admin_update_coupon(coupon_id: str, body: CouponUpdateBody, x_admin_key: str = Header(None)):
    require_admin(x_admin_key)
    return coupons.update_coupon(coupon_id, body.model_dump(exclude_unset=True))

@app.delete("/admin/coupons/{coupon_id}")
def admin_delete_coupon(coupon_id: str, x_admin_key: str = Header(None)):
    require_admin(x_admin_key)
    coupon = coupons.delete_coupon(coupon_id)
    return {"message": f"Coupon {coupon.code} deleted"}

@app.patch("/admin/coupons/{coupon_id}/toggle")
def admin_toggle_coupon(coupon_id: str, x_admin_key: str = Header(None)):
    require_admin(x_admin_key)
    return coupons.toggle_coupon(coupon_id)

@app.post("/admin/coupons/{coupon_id}/rollback")
def admin_rollback_coupon(coupon_id: str, body: RollbackBody, x_admin_key: str = Header(None)):
    require_admin(x_admin_key)
    return {"ok": coupons.restore_coupon_usage(coupon_id, body.user_id)}

@app.post("/seller/coupons")
def seller_create_coupon(body: CouponBody, seller_id: str = Query(...)):
    return coupons.create_seller_coupon(seller_id, body.model_dump(exclude_none=True))

@app.get("/seller/coupons")
def seller_list_coupons(seller_id: str = Query(...)):
    return coupons.list_coupons(seller_id)

@app.put("/seller/coupons/{coupon_id}")
def seller_update_coupon(coupon_id: str, body: CouponUpdateBody, seller_id: str = Query(...)):
    return coupons.update_coupon(coupon_id, body.model_dump(exclude_unset=True), seller_id=seller_id)

@app.delete("/seller/coupons/{coupon_id}")
def seller_delete_coupon(coupon_id: str, seller_id: str = Query(...)):
    coupon = coupons.delete_coupon(coupon_id, seller_id=seller_id)
    return {"message": f"Coupon {coupon.code} deleted"}

@app.patch("/seller/coupons/{coupon_id}/toggle")
def seller_toggle_coupon(coupon_id: str, seller_id: str = Query(...)):
    return coupons.toggle_coupon(coupon_id, seller_id=seller_id)

# ---------------------- Orders (buyer) ----------------------

@app.post("/orders")
def create_order(body: CheckoutBody, user_id: str = Query(...)):
    return orders.create_order_from_cart(
        user_id,
        body.shipping_address,
        coupon_codes=body.coupon_codes,
        item_addresses=[a.model_dump() for a in body.item_addresses],
        payment_method=body.payment_method,
        notes=body.notes,
    )

@app.post("/orders/buy-now")
def buy_now(body: BuyNowBody, user_id: str = Query(...)):
    return orders.buy_now(
        user_id,
        body.product_id,
        body.quantity,
        body.shipping_address,
        coupon_codes=body.coupon_codes,
        payment_method=body.payment_method,
        notes=body.notes,
    )

@app.get("/orders")
def list_orders(user_id: str = Query(...), status: Optional[str] = None):
    return orders.list_orders(user_id, status)

@app.get("/orders/{order_id}")
def get_order(order_id: str, user_id: str = Query(...)):
    return orders.order_details(order_id, user_id)

@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, body: ReasonBody, user_id: str = Query(...)):
    return lifecycle.cancel_order(order_id, user_id, body.reason)

@app.post("/orders/{order_id}/items/{item_id}/cancel")
def cancel_order_item(order_id: str, item_id: str, body: ReasonBody, user_id: str = Query(...)):
    return lifecycle.cancel_item(order_id, item_id, user_id=user_id, reason=body.reason)

@app.post("/orders/{order_id}/confirm-delivery")
def confirm_delivery(order_id: str, user_id: str = Query(...)):
    return lifecycle.confirm_delivery(order_id, user_id)

@app.post("/orders/{order_id}/items/{item_id}/return")
def request_return(order_id: str, item_id: str, body: ReturnBody, user_id: str = Query(...)):
    return lifecycle.request_return(order_id, item_id, user_id, body.quantity, body.reason)

@app.post("/orders/{order_id}/disputes")
def open_dispute(order_id: str, body: DisputeBody, user_id: str = Query(...)):
    return lifecycle.open_dispute(order_id, user_id, body.reason, item_id=body.item_id)

# ---------------------- Seller Fulfilment ----------------------

@app.get("/seller/orders")
def seller_orders(seller_id: str = Query(...)):
    return orders.seller_sub_orders(seller_id)

@app.patch("/seller/orders/{order_id}/items/{item_id}/status")
def seller_update_item(order_id: str, item_id: str, body: StatusBody, seller_id: str = Query(...)):
    return lifecycle.update_item_status(order_id, item_id, body.status, seller_id=seller_id)

@app.post("/seller/orders/{order_id}/tracking")
def seller_add_tracking(order_id: str, body: TrackingBody, seller_id: str = Query(...)):
    return lifecycle.add_tracking(order_id, seller_id, body.tracking_number)

@app.post("/seller/orders/{order_id}/items/{item_id}/cancel")
def seller_cancel_item(order_id: str, item_id: str, body: ReasonBody, seller_id: str = Query(...)):
    return lifecycle.cancel_item(order_id, item_id, seller_id=seller_id, reason=body.reason)

@app.post("/seller/orders/{order_id}/items/{item_id}/collect")
def seller_collect_payment(order_id: str, item_id: str, seller_id: str = Query(...)):
    return lifecycle.confirm_payment_collection(order_id, item_id, seller_id)

# ---------------------- Admin: Orders, Returns, Disputes ----------------------

@app.get("/admin/orders")
def admin_list_orders(status: Optional[str] = None, user_id: Optional[str] = None, seller_id: Optional[str] = None,
                      date_from: Optional[datetime] = Query(None, alias="from"),
                      date_to: Optional[datetime] = Query(None, alias="to"),
                      x_admin_key: str = Header(None)):
    require_admin(x_admin_key)
    return orders.list_all_orders(status, user_id, seller_id, date_from, date_to)

@app.delete("/admin/orders/{order_id}")
def admin_delete_order(order_id: str, x_admin_key: str = Header(None)):
    require_admin(x_admin_key)
    orders.delete_order(order_id)
    return {"message": "Order deleted successfully"}

@app.patch("/admin/orders/{order_id}/status")
def admin_update_order_status(order_id: str, body: StatusBody, x_admin_key: str = Header(None)):
    require_admin(x_admin_key)
    return lifecycle.update_order_status(order_id, body.status, body.reason)

@app.post("/admin/orders/{order_id}/refund")
def admin_refund_order(order_id: str, body: ReasonBody, x_admin_key: str = Header(None)):
    require_admin(x_admin_key)
    return lifecycle.refund_order(order_id, body.reason)

@app.patch("/admin/returns/{return_id}")
def admin_update_return(return_id: str, body: ReturnStatusBody, x_admin_key: str = Header(None)):
    require_admin(x_admin_key)
    return lifecycle.update_return_status(return_id, body.status, body.admin_note)

@app.patch("/admin/disputes/{dispute_id}")
def admin_resolve_dispute(dispute_id: str, body: ResolveBody, x_admin_key: str = Header(None)):
    require_admin(x_admin_key)
    return lifecycle.resolve_dispute(dispute_id, body.outcome, body.resolution)

# ---------------------- Payments ----------------------

@app.post("/payment/verify")
def payment_verify(body: PaymentVerifyBody):
    record = payments.handle_webhook(body.payment_order_id, body.payment_id, body.signature,
                                     succeeded=body.succeeded, reason=body.reason)
    return {"ok": True, "status": record.status, "order_id": record.order}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
