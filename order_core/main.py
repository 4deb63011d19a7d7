from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import __version__, database, errors, inventory, orders, payments, schemas, state_machine
from .models import Inventory

ERROR_STATUS = {
    errors.NotFound: 404,
    errors.InsufficientStock: 409,
    errors.InvalidTransition: 409,
    errors.CouponExhausted: 409,
    errors.DuplicatePayment: 409,
    errors.CouponExpired: 410,
    errors.ConstraintViolation: 422,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.init_db()
    yield
    database.engine.dispose()


app = FastAPI(title="Order Core API", version=__version__, lifespan=lifespan)


@app.exception_handler(errors.OrderCoreError)
async def order_core_error(request: Request, exc: errors.OrderCoreError):
    code = ERROR_STATUS.get(type(exc), 400)
    return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})


@app.post("/orders", response_model=schemas.OrderOut, status_code=status.HTTP_201_CREATED)
def create_order(order: schemas.OrderCreate, db: Session = Depends(database.get_db)):
    new_order = orders.place_order(db, order)
    db.commit()
    return new_order


@app.get("/orders/{order_id}", response_model=schemas.OrderOut)
def read_order(order_id: int, db: Session = Depends(database.get_db)):
    return orders.get_order(db, order_id)


@app.get("/orders/{order_id}/history", response_model=list[schemas.StatusHistoryOut])
def read_history(order_id: int, db: Session = Depends(database.get_db)):
    return orders.status_history(db, order_id)


@app.post("/orders/{order_id}/transitions", response_model=schemas.StatusHistoryOut)
def move_order(order_id: int, req: schemas.TransitionRequest, db: Session = Depends(database.get_db)):
    entry = state_machine.transition(db, order_id, req.status, actor_id=req.actor_id, note=req.note)
    db.commit()
    return entry


@app.post("/orders/{order_id}/payments", response_model=schemas.PaymentOut, status_code=status.HTTP_201_CREATED)
def create_payment(order_id: int, req: schemas.PaymentCreate, db: Session = Depends(database.get_db)):
    payment = payments.record_payment(
        db, order_id, req.amount, req.method, req.payment_reference, currency=req.currency
    )
    db.commit()
    return payment


@app.post("/payments/{reference}/confirm", response_model=schemas.PaymentOut)
def confirm_payment(reference: str, req: schemas.GatewayConfirmation, db: Session = Depends(database.get_db)):
    payment = payments.confirm(db, reference, req.status)
    db.commit()
    return payment


@app.post("/orders/{order_id}/refunds", response_model=schemas.PaymentOut, status_code=status.HTTP_201_CREATED)
def create_refund(order_id: int, req: schemas.RefundCreate, db: Session = Depends(database.get_db)):
    payment = payments.refund(db, order_id, req.amount, req.payment_reference, method=req.method)
    db.commit()
    return payment


@app.post("/inventory/{product_id}/restock", response_model=schemas.InventoryOut)
def restock(product_id: int, req: schemas.RestockRequest, db: Session = Depends(database.get_db)):
    inventory.restock(db, product_id, req.quantity)
    db.commit()
    return _inventory_out(db, product_id)


@app.get("/inventory/{product_id}", response_model=schemas.InventoryOut)
def read_inventory(product_id: int, db: Session = Depends(database.get_db)):
    return _inventory_out(db, product_id)


def _inventory_out(db: Session, product_id: int) -> schemas.InventoryOut:
    row = db.get(Inventory, product_id, populate_existing=True)
    if row is None:
        raise errors.NotFound("Inventory", product_id)
    return schemas.InventoryOut(
        product_id=row.product_id,
        quantity=row.quantity,
        reserved=row.reserved,
        available=row.quantity - row.reserved,
    )
