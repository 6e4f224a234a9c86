import logging
import os
from functools import wraps

from flask import Blueprint, Flask, abort, current_app, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .clock import SystemClock
from .config import Config
from .db import make_engine, make_session_factory
from .errors import LedgerError
from .ledger import Ledger
from .payments import whole_number

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")


def create_app(config=None, clock=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)
    CORS(app)

    logging.basicConfig(level=app.config.get("LOG_LEVEL", "INFO"))

    # SQLAlchemy setup, tables are created if missing
    engine = make_engine(
        app.config["SQLALCHEMY_DATABASE_URI"], echo=app.config["SQLALCHEMY_ECHO"]
    )
    session_factory = make_session_factory(engine)

    app.extensions["ledger"] = Ledger(
        session_factory,
        clock=clock or SystemClock(),
        interest_rate=app.config["INSTALLMENT_INTEREST_RATE"],
        max_active_borrows=app.config["MAX_ACTIVE_BORROWS"],
    )

    @app.errorhandler(LedgerError)
    def handle_ledger_error(e):
        if e.status_code >= 500:
            logger.error("%s on %s: %s", e.code, request.path, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({"error": e.description, "code": e.name}), e.code

    app.register_blueprint(api)
    return app


# ----------------- helpers -----------------

def ledger() -> Ledger:
    return current_app.extensions["ledger"]


def require_api_key(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("SERVICE_API_KEY")
        sent = request.headers.get("X-API-Key")
        if not expected or sent != expected:
            logger.warning("Invalid API key on %s", request.path)
            abort(401, description="Invalid or missing service API key")
        return func(*args, **kwargs)

    return wrapper


def _body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _int(value, name):
    if value is None or value == "":
        return None
    return whole_number(value, name)


# ----------------- health -----------------

@api.get("/health")
def health():
    return jsonify({"status": "ok", "service": "library_service"})


# ----------------- catalog -----------------

@api.post("/books")
@require_api_key
def create_book():
    data = _body()
    book = ledger().catalog.add_book(
        title=data.get("title"),
        author=data.get("author"),
        isbn=data.get("isbn"),
        total_copies=data.get("total_copies", 1),
        price=data.get("price", 0),
        borrow_price=data.get("borrow_price", 0),
        borrow_fine=data.get("borrow_fine", 0),
        category=data.get("category"),
        publisher=data.get("publisher"),
        description=data.get("description"),
    )
    return jsonify({"message": "Book created successfully", "book": book.to_dict()}), 201


@api.get("/books")
def list_books():
    books = ledger().catalog.list_books(
        title=request.args.get("title"), author=request.args.get("author")
    )
    return jsonify([b.to_dict() for b in books])


@api.get("/books/<int:book_id>")
def get_book(book_id):
    return jsonify(ledger().catalog.get_book(book_id).to_dict())


@api.put("/books/<int:book_id>")
@require_api_key
def edit_book(book_id):
    book = ledger().catalog.update_book(book_id, _body())
    return jsonify({"message": "Book updated successfully", "book": book.to_dict()})


@api.delete("/books/<int:book_id>")
@require_api_key
def delete_book(book_id):
    ledger().catalog.delete_book(book_id)
    return jsonify({"message": "Book deleted successfully"})


@api.put("/books/<int:book_id>/copies")
@require_api_key
def set_book_copies(book_id):
    book = ledger().catalog.set_total_copies(book_id, _body().get("total_copies"))
    return jsonify(book.to_dict())


@api.post("/users")
@require_api_key
def create_user():
    data = _body()
    user = ledger().catalog.register_user(
        user_name=data.get("user_name"),
        email=data.get("email"),
        full_name=data.get("full_name"),
        wallet_balance=data.get("wallet_balance", 0),
        role=data.get("role", "user"),
    )
    return jsonify(user.to_dict()), 201


@api.get("/users/<int:user_id>")
def get_user(user_id):
    return jsonify(ledger().catalog.get_user(user_id).to_dict())


# ----------------- borrowing -----------------

@api.post("/borrow")
def borrow_book():
    data = _body()
    borrow = ledger().borrow(
        _int(data.get("borrowed_by"), "borrowed_by"),
        _int(data.get("borrowed_book"), "borrowed_book"),
        data.get("expected_return_date"),
    )
    return jsonify(
        {
            "message": "Book borrowed successfully",
            "borrow": borrow.to_dict(),
            "quoted_price": borrow.to_dict()["total_borrow_price"],
        }
    ), 201


@api.put("/borrow/return/<int:borrow_id>")
def return_book(borrow_id):
    borrow = ledger().return_book(borrow_id)
    return jsonify({"message": "Book returned successfully", "borrow": borrow.to_dict()})


@api.get("/borrow/records")
def borrow_records():
    borrows = ledger().borrows.list_borrows(
        user_id=_int(request.args.get("user_id"), "user_id"),
        status=request.args.get("status"),
    )
    return jsonify([b.to_dict() for b in borrows])


# ----------------- purchases -----------------

@api.post("/books/purchase")
def purchase_book():
    data = _body()
    result = ledger().purchase(
        _int(data.get("userId"), "userId"),
        _int(data.get("bookId"), "bookId"),
        data.get("quantity", 1),
        payment_type=data.get("payment_type", "full"),
        installment_months=data.get("installment_months"),
    )
    return jsonify({"message": "Transaction created successfully.", **result.to_dict()}), 201


@api.get("/transactions")
def list_transactions():
    transactions = ledger().purchases.list_transactions(
        user_id=_int(request.args.get("user_id"), "user_id")
    )
    return jsonify([t.to_dict() for t in transactions])


@api.get("/transactions/<int:transaction_id>")
def get_transaction(transaction_id):
    return jsonify(ledger().purchases.get_transaction(transaction_id).to_dict())


# ----------------- installments -----------------

@api.get("/installments")
def list_installment_plans():
    plans = ledger().installments.list_plans(
        user_id=_int(request.args.get("user_id"), "user_id"),
        status=request.args.get("status"),
    )
    return jsonify([p.to_dict() for p in plans])


@api.get("/installments/<int:plan_id>")
def get_installment_plan(plan_id):
    return jsonify(ledger().installments.get_plan(plan_id).to_dict())


@api.post("/installments/<int:plan_id>/pay")
def pay_installment(plan_id):
    plan = ledger().pay_installment(plan_id)
    return jsonify({"message": "Installment paid successfully", "plan": plan.to_dict()})


@api.post("/installments/<int:plan_id>/cancel")
def cancel_installment_plan(plan_id):
    plan = ledger().installments.cancel_plan(plan_id)
    return jsonify({"message": "Installment plan cancelled", "plan": plan.to_dict()})


@api.post("/installments/defaults")
@require_api_key
def mark_defaulted_plans():
    grace_days = _int(_body().get("grace_days"), "grace_days")
    if grace_days is None:
        grace_days = current_app.config["PLAN_GRACE_DAYS"]
    count = ledger().installments.mark_defaulted(grace_days)
    return jsonify({"defaulted": count})


# ----------------- earnings -----------------

@api.get("/earnings")
def get_earnings():
    report = ledger().get_earnings(request.args.get("timeframe", "month"))
    return jsonify(report.to_dict())


@api.get("/users/<int:user_id>/earnings")
def get_user_earnings(user_id):
    total = ledger().earnings.user_earnings(user_id)
    return jsonify({"totalEarnings": str(total)})


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    create_app().run(host="0.0.0.0", port=port, debug=True)
