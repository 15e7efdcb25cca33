from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Dict, List, Optional, Tuple

from flask import Flask, current_app, jsonify, request, session
from flask_cors import CORS

try:
    from .balances import BalanceService
    from .config import config
    from .db import Database, db
    from .errors import LedgerError, ValidationError
    from .expenses import ExpenseLedger
    from .models import Expense, PaidBy, SettlementMethod, SettlementRequest, SplitDetail, SplitShare, SplitType
    from .money import to_decimal, to_number
    from .repositories import (
        BalanceRepository,
        ExpenseRepository,
        GroupDirectory,
        SettlementRepository,
        UserDirectory,
    )
    from .settlements import SettlementService
except ImportError:  # pragma: no cover - fallback for direct execution
    from groupledger.balances import BalanceService  # type: ignore
    from groupledger.config import config  # type: ignore
    from groupledger.db import Database, db  # type: ignore
    from groupledger.errors import LedgerError, ValidationError  # type: ignore
    from groupledger.expenses import ExpenseLedger  # type: ignore
    from groupledger.models import (  # type: ignore
        Expense,
        PaidBy,
        SettlementMethod,
        SettlementRequest,
        SplitDetail,
        SplitShare,
        SplitType,
    )
    from groupledger.money import to_decimal, to_number  # type: ignore
    from groupledger.repositories import (  # type: ignore
        BalanceRepository,
        ExpenseRepository,
        GroupDirectory,
        SettlementRepository,
        UserDirectory,
    )
    from groupledger.settlements import SettlementService  # type: ignore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    expenses: ExpenseLedger
    settlements: SettlementService
    balances: BalanceService


def build_services(database: Database) -> Services:
    balances = BalanceRepository(database)
    users = UserDirectory(database)
    groups = GroupDirectory(database)
    return Services(
        expenses=ExpenseLedger(database, ExpenseRepository(database), balances, users, groups),
        settlements=SettlementService(database, SettlementRepository(database), balances, users, groups),
        balances=BalanceService(database, balances, users, groups, max_retries=config.LEDGER_MAX_RETRIES),
    )


def create_app(services: Optional[Services] = None) -> Flask:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.SECRET_KEY
    app.config["SESSION_COOKIE_NAME"] = config.SESSION_COOKIE_NAME
    app.config["SESSION_COOKIE_HTTPONLY"] = config.SESSION_COOKIE_HTTPONLY
    app.config["SESSION_COOKIE_SAMESITE"] = config.SESSION_COOKIE_SAMESITE
    app.extensions["ledger"] = services or build_services(db)

    CORS(
        app,
        supports_credentials=True,
        resources={r"/api/*": {"origins": config.CORS_ORIGINS}},
    )

    @app.errorhandler(LedgerError)
    def handle_ledger_error(exc: LedgerError):
        if exc.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, exc.message)
        return jsonify({"error": exc.code, "message": exc.message}), exc.status

    @app.cli.command("init-db")
    def init_db():
        """Create the ledger tables."""
        db.init_schema()
        logger.info("schema applied to %s", config.DB_NAME)

    register_routes(app)
    return app


def ledger() -> Services:
    return current_app.extensions["ledger"]


def require_login(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            return jsonify({"error": "authentication_required"}), 401
        return func(*args, **kwargs)

    return wrapper


def require_system_token(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        token = request.headers.get("X-Ledger-Token", "")
        if not config.SYSTEM_TOKEN or not hmac.compare_digest(token, config.SYSTEM_TOKEN):
            return jsonify({"error": "forbidden"}), 403
        return func(*args, **kwargs)

    return wrapper


def register_routes(app: Flask) -> None:
    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok"})

    @app.post("/api/expenses")
    @require_login
    def record_expense():
        payload = _json_payload()
        expense = Expense(
            creator_id=session["user_id"],
            title=(payload.get("title") or "").strip(),
            amount=_required_amount(payload, "amount"),
            currency=_currency(payload),
            paid_by=_parse_paid_by(payload.get("paid_by")),
            split=_parse_split(payload.get("split")),
            group_id=payload.get("group_id") or None,
        )
        expense = ledger().expenses.record_expense(expense)
        return jsonify(expense.to_dict()), 201

    @app.get("/api/expenses")
    @require_login
    def list_user_expenses():
        limit, offset = _page_args()
        expenses = ledger().expenses.list_user_expenses(session["user_id"], limit, offset)
        return jsonify([expense.to_dict() for expense in expenses])

    @app.get("/api/expenses/<expense_id>")
    @require_login
    def get_expense(expense_id: str):
        expense = ledger().expenses.get_expense(expense_id, session["user_id"])
        return jsonify(expense.to_dict())

    @app.patch("/api/expenses/<expense_id>")
    @require_login
    def update_expense(expense_id: str):
        payload = _json_payload()
        changes: Dict[str, Any] = {}
        if "title" in payload:
            changes["title"] = (payload.get("title") or "").strip()
        if "amount" in payload:
            changes["amount"] = _required_amount(payload, "amount")
        if "currency" in payload:
            changes["currency"] = _currency(payload)
        if "paid_by" in payload:
            changes["paid_by"] = _parse_paid_by(payload.get("paid_by"))
        if "split" in payload:
            changes["split"] = _parse_split(payload.get("split"))
        if not changes:
            raise ValidationError("missing_fields")

        expense = ledger().expenses.update_expense(expense_id, session["user_id"], changes)
        return jsonify(expense.to_dict())

    @app.delete("/api/expenses/<expense_id>")
    @require_login
    def delete_expense(expense_id: str):
        ledger().expenses.delete_expense(expense_id, session["user_id"])
        return jsonify({"status": "deleted"}), 200

    @app.get("/api/groups/<group_id>/expenses")
    @require_login
    def list_group_expenses(group_id: str):
        limit, offset = _page_args()
        expenses = ledger().expenses.list_group_expenses(group_id, limit, offset, user_id=session["user_id"])
        return jsonify([expense.to_dict() for expense in expenses])

    @app.get("/api/balances")
    @require_login
    def get_user_balances():
        summary = ledger().balances.get_user_balance_summary(session["user_id"])
        return jsonify(summary.to_dict())

    @app.get("/api/balances/history")
    @require_login
    def get_balance_history():
        limit, offset = _page_args()
        history = ledger().balances.get_balance_history(
            session["user_id"],
            request.args.get("group_id") or None,
            limit,
            offset,
        )
        return jsonify([entry.to_dict() for entry in history])

    @app.get("/api/groups/<group_id>/balances")
    @require_login
    def get_group_balances(group_id: str):
        balances = ledger().balances.get_group_balances(group_id, user_id=session["user_id"])
        settlements = ledger().balances.suggest_settlements(group_id)
        return jsonify(
            {
                "balances": [balance.to_dict() for balance in balances],
                "settlements": [transfer.to_dict() for transfer in settlements],
            }
        )

    @app.post("/api/settlements")
    @require_login
    def create_settlement():
        payload = _json_payload()
        method = payload.get("method") or SettlementMethod.OTHER.value
        try:
            method = SettlementMethod(method)
        except ValueError:
            raise ValidationError(f"invalid settlement method: {method}") from None

        settlement = ledger().settlements.create_settlement(
            SettlementRequest(
                from_user_id=session["user_id"],
                to_user_id=payload.get("to_user_id") or "",
                amount=_required_amount(payload, "amount"),
                currency=_currency(payload),
                method=method,
                group_id=payload.get("group_id") or None,
                description=(payload.get("description") or "").strip(),
            )
        )
        return jsonify(settlement.to_dict()), 201

    @app.get("/api/settlements")
    @require_login
    def list_user_settlements():
        limit, offset = _page_args()
        settlements = ledger().settlements.list_user_settlements(session["user_id"], limit, offset)
        return jsonify([settlement.to_dict() for settlement in settlements])

    @app.get("/api/groups/<group_id>/settlements")
    @require_login
    def list_group_settlements(group_id: str):
        limit, offset = _page_args()
        settlements = ledger().settlements.list_group_settlements(
            group_id, limit, offset, user_id=session["user_id"]
        )
        return jsonify([settlement.to_dict() for settlement in settlements])

    @app.get("/api/settlements/pending")
    @require_login
    def get_pending_settlements():
        pending = ledger().settlements.get_pending_settlements(session["user_id"])
        return jsonify([settlement.to_dict() for settlement in pending])

    @app.get("/api/settlements/<settlement_id>")
    @require_login
    def get_settlement(settlement_id: str):
        settlement = ledger().settlements.get_settlement(settlement_id, session["user_id"])
        return jsonify(settlement.to_dict())

    @app.post("/api/settlements/<settlement_id>/complete")
    @require_login
    def complete_settlement(settlement_id: str):
        payload = request.get_json(silent=True) or {}
        settlement = ledger().settlements.complete_settlement(
            settlement_id,
            session["user_id"],
            payload.get("transaction_id") or None,
        )
        return jsonify(settlement.to_dict())

    @app.post("/api/settlements/<settlement_id>/cancel")
    @require_login
    def cancel_settlement(settlement_id: str):
        settlement = ledger().settlements.cancel_settlement(settlement_id, session["user_id"])
        return jsonify(settlement.to_dict())

    @app.post("/api/settlements/<settlement_id>/fail")
    @require_system_token
    def fail_settlement(settlement_id: str):
        payload = _json_payload()
        settlement = ledger().settlements.fail_settlement(settlement_id, payload.get("reason") or "")
        return jsonify(settlement.to_dict())


def _json_payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("invalid_json")
    return payload


def _required_amount(payload: Dict[str, Any], key: str):
    if payload.get(key) is None:
        raise ValidationError("missing_fields")
    return to_decimal(payload[key])


def _currency(payload: Dict[str, Any]) -> str:
    currency = payload.get("currency") or config.DEFAULT_CURRENCY
    if not isinstance(currency, str):
        raise ValidationError("invalid_currency")
    return currency.strip().upper()


def _parse_paid_by(payload: Any) -> List[PaidBy]:
    if not isinstance(payload, list):
        raise ValidationError("invalid_paid_by_payload")
    paid_by: List[PaidBy] = []
    for item in payload:
        amount_value = item.get("amount_paid", item.get("amount")) if isinstance(item, dict) else None
        if not isinstance(item, dict) or not item.get("user_id") or amount_value is None:
            raise ValidationError("invalid_paid_by_payload")
        paid_by.append(PaidBy(user_id=str(item["user_id"]), amount=to_decimal(amount_value)))
    return paid_by


def _parse_split(payload: Any) -> SplitDetail:
    if not isinstance(payload, dict):
        raise ValidationError("invalid_split_payload")
    try:
        split_type = SplitType(payload.get("type") or SplitType.EQUAL.value)
    except ValueError:
        raise ValidationError(f"invalid split type: {payload.get('type')}") from None

    details: List[SplitShare] = []
    for item in payload.get("details") or []:
        if not isinstance(item, dict) or not item.get("user_id"):
            raise ValidationError("invalid_split_payload")
        details.append(SplitShare(user_id=str(item["user_id"]), value=to_number(item.get("value", 0))))
    return SplitDetail(type=split_type, details=details)


def _page_args() -> Tuple[int, int]:
    try:
        limit = int(request.args.get("limit", 0))
        offset = int(request.args.get("offset", 0))
    except ValueError:
        raise ValidationError("invalid_pagination") from None
    if limit < 0 or offset < 0:
        raise ValidationError("invalid_pagination")
    return limit, offset


app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
