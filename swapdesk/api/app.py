"""HTTP API: Flask surface over the engines.

Routes:
  - Batch triggers (cron, Bearer ``CRON_SECRET`` when set):
      POST /api/orders/monitor, /api/orders/execute,
      /api/predictions/resolve-cron, /api/predictions/execute-trades
  - Synchronous paths: create / cancel orders, create / join / resolve pools
  - Wallet: record a self-submitted swap (POST /api/wallet/transactions)
  - Reads: orders, pools, wallet positions / pnl / tax-report
  - /health, /ready and Prometheus-format /metrics (open, off when
    observability.enable_metrics is false)

Each request runs against freshly built services; the price cache is the
one long-lived object and is shared across requests.
"""

from __future__ import annotations

import asyncio
import hmac
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from swapdesk.config import AppConfig, get_cron_secret, load_config
from swapdesk.connectors.rate_limiter import rate_limiter
from swapdesk.engine.errors import (
    NotFoundError,
    StaleStateError,
    SwapdeskError,
    UnauthorizedError,
    ValidationError,
)
from swapdesk.engine.scheduler import SettlementScheduler
from swapdesk.ledger.positions import get_positions, wallet_summary
from swapdesk.ledger.tax_report import generate_tax_report
from swapdesk.observability.logger import get_logger
from swapdesk.observability.metrics import metrics
from swapdesk.services import Services, build_services, run_with_services
from swapdesk.storage.cache import TTLCache
from swapdesk.storage.models import OrderStatus, PoolStatus

_project_root = Path(__file__).resolve().parent.parent.parent
load_dotenv(_project_root / ".env")

log = get_logger(__name__)

_CRON_PATHS = frozenset({
    "/api/orders/monitor",
    "/api/orders/execute",
    "/api/predictions/resolve-cron",
    "/api/predictions/execute-trades",
})

_ERROR_STATUS: list[tuple[type[SwapdeskError], int]] = [
    (ValidationError, 400),
    (UnauthorizedError, 403),
    (NotFoundError, 404),
    (StaleStateError, 409),
]


def create_app(
    config: AppConfig | None = None,
    services_factory: Callable[[], Services] | None = None,
) -> Flask:
    cfg = config or load_config()
    price_cache = TTLCache()

    def _default_factory() -> Services:
        return build_services(cfg, price_cache=price_cache)

    factory = services_factory or _default_factory
    app = Flask(__name__)

    def call(fn: Callable[[Services], Awaitable[Any]]) -> Any:
        return asyncio.run(run_with_services(factory, fn))

    def body() -> dict[str, Any]:
        return request.get_json(silent=True) or {}

    def require(data: dict[str, Any], *names: str) -> None:
        missing = [n for n in names if data.get(n) in (None, "")]
        if missing:
            raise ValidationError(f"missing required fields: {', '.join(missing)}")

    # ─── Auth & errors ───────────────────────────────────────────────

    @app.before_request
    def _require_cron_secret() -> Any:
        if request.path not in _CRON_PATHS:
            return None
        secret = get_cron_secret()
        if not secret:
            return None
        header = request.headers.get("Authorization", "")
        if not hmac.compare_digest(header, f"Bearer {secret}"):
            log.warning("api.unauthorized", path=request.path)
            return jsonify({"error": "Unauthorized"}), 401
        return None

    @app.errorhandler(SwapdeskError)
    def _engine_error(e: SwapdeskError) -> Any:
        for cls, status in _ERROR_STATUS:
            if isinstance(e, cls):
                return jsonify({"error": str(e), "type": type(e).__name__}), status
        log.error("api.engine_error", path=request.path, error=str(e))
        return jsonify({"error": str(e), "type": type(e).__name__}), 502

    # ─── Health & metrics ────────────────────────────────────────────

    @app.route("/health")
    def health() -> Any:
        return jsonify({"status": "ok", "service": "swapdesk"})

    @app.route("/ready")
    def ready() -> Any:
        """Readiness probe: the database answers a trivial query."""
        async def _ping(s: Services) -> None:
            s.db.conn.execute("SELECT 1").fetchone()

        try:
            call(_ping)
        except Exception as e:
            log.warning("api.not_ready", error=str(e))
            return jsonify({"status": "not_ready", "database": str(e)}), 503
        return jsonify({"status": "ready", "database": "ok"})

    @app.route("/metrics")
    def prometheus_metrics() -> Any:
        """Prometheus text exposition format; 404 when metrics are disabled."""
        if not cfg.observability.enable_metrics:
            return jsonify({"error": "metrics are disabled"}), 404
        lines = metrics.render_prometheus()
        upstreams = rate_limiter.stats()
        for metric, field_name in (
            ("rate_limiter_requests_total", "requests"),
            ("rate_limiter_throttled_total", "throttled"),
            ("rate_limiter_waited_secs_total", "waited_secs"),
        ):
            lines.append(f"# TYPE swapdesk_{metric} counter")
            for upstream, stats in upstreams.items():
                value = getattr(stats, field_name)
                lines.append(f'swapdesk_{metric}{{upstream="{upstream}"}} {round(value, 6)}')
        cache = price_cache.stats
        lines.append("# TYPE swapdesk_price_cache_entries gauge")
        lines.append(f"swapdesk_price_cache_entries {cache['entries']}")
        lines.append("# TYPE swapdesk_price_cache_hit_rate gauge")
        lines.append(f"swapdesk_price_cache_hit_rate {cache['hit_rate']}")
        return "\n".join(lines) + "\n", 200, {"Content-Type": "text/plain; charset=utf-8"}

    # ─── Batch triggers ──────────────────────────────────────────────

    def _trigger(pass_name: str) -> Any:
        async def _run(s: Services) -> Any:
            return await SettlementScheduler(s).run_pass(pass_name)

        result = call(_run)
        status = 200 if result.status == "ok" else 500
        return jsonify({"success": result.status == "ok", **result.to_dict()}), status

    @app.route("/api/orders/monitor", methods=["POST"])
    def orders_monitor() -> Any:
        return _trigger("monitor")

    @app.route("/api/orders/execute", methods=["POST"])
    def orders_execute() -> Any:
        return _trigger("execute")

    @app.route("/api/predictions/resolve-cron", methods=["POST"])
    def predictions_resolve_cron() -> Any:
        return _trigger("resolve")

    @app.route("/api/predictions/execute-trades", methods=["POST"])
    def predictions_execute_trades() -> Any:
        pool_id = body().get("pool_id")
        if not pool_id:
            return _trigger("winner_trades")

        async def _one(s: Services) -> Any:
            return await s.predictions.execute_pool_trades(pool_id)

        return jsonify({"success": True, **call(_one).to_dict()})

    # ─── Orders ──────────────────────────────────────────────────────

    @app.route("/api/orders", methods=["POST"])
    def orders_create() -> Any:
        data = body()
        require(data, "wallet_address", "order_type", "token_in", "token_out", "amount_in")
        fields = {
            k: data.get(k) for k in (
                "wallet_address", "order_type", "token_in", "token_out", "amount_in",
                "target_price", "stop_price", "limit_price", "slippage_bps",
                "expires_at", "token_in_symbol", "token_out_symbol",
            ) if data.get(k) is not None
        }

        async def _create(s: Services) -> Any:
            return s.orders.create_order(
                good_till_cancel=bool(data.get("good_till_cancel", False)), **fields,
            )

        order = call(_create)
        return jsonify({"success": True, "order": order.model_dump(mode="json")}), 201

    @app.route("/api/orders/cancel", methods=["POST"])
    def orders_cancel() -> Any:
        data = body()
        require(data, "order_id", "wallet_address")

        async def _cancel(s: Services) -> Any:
            return s.orders.cancel_order(data["order_id"], data["wallet_address"])

        return jsonify({"success": True, "order": call(_cancel).model_dump(mode="json")})

    @app.route("/api/orders")
    def orders_list() -> Any:
        wallet = request.args.get("wallet", "")
        if not wallet:
            raise ValidationError("missing wallet")
        status = request.args.get("status")
        try:
            status_enum = OrderStatus(status) if status else None
        except ValueError:
            raise ValidationError(f"unknown status: {status}")

        async def _list(s: Services) -> Any:
            return s.orders.list_orders(wallet, status_enum, int(request.args.get("limit", 100)))

        return jsonify({"orders": [o.model_dump(mode="json") for o in call(_list)]})

    @app.route("/api/orders/<order_id>")
    def orders_get(order_id: str) -> Any:
        async def _get(s: Services) -> Any:
            return s.orders.get_order(order_id)

        return jsonify({"order": call(_get).model_dump(mode="json")})

    # ─── Predictions ─────────────────────────────────────────────────

    @app.route("/api/predictions", methods=["POST"])
    def predictions_create() -> Any:
        data = body()
        require(data, "token_address", "prediction_type", "threshold", "timeframe_minutes")

        async def _create(s: Services) -> Any:
            return await s.predictions.create_pool(
                token_address=data["token_address"],
                prediction_type=data["prediction_type"],
                threshold=float(data["threshold"]),
                timeframe_minutes=int(data["timeframe_minutes"]),
                creator_address=data.get("creator_address"),
                token_symbol=data.get("token_symbol", ""),
                description=data.get("description"),
                auto_execute_trades=bool(data.get("auto_execute_trades", True)),
            )

        return jsonify({"success": True, "pool": call(_create).model_dump(mode="json")}), 201

    @app.route("/api/predictions/join", methods=["POST"])
    def predictions_join() -> Any:
        data = body()
        require(data, "pool_id", "wallet_address", "stake_amount", "prediction")

        async def _join(s: Services) -> Any:
            return s.predictions.join_pool(
                data["pool_id"], data["wallet_address"],
                float(data["stake_amount"]), data["prediction"],
            )

        return jsonify({"success": True, "pool": call(_join).model_dump(mode="json")})

    @app.route("/api/predictions/resolve", methods=["POST"])
    def predictions_resolve() -> Any:
        data = body()
        require(data, "pool_id")

        async def _resolve(s: Services) -> Any:
            return await s.predictions.resolve_pool(data["pool_id"])

        return jsonify({"success": True, "pool": call(_resolve).model_dump(mode="json")})

    @app.route("/api/predictions")
    def predictions_list() -> Any:
        status = request.args.get("status")
        try:
            status_enum = PoolStatus(status) if status else None
        except ValueError:
            raise ValidationError(f"unknown status: {status}")

        async def _list(s: Services) -> Any:
            return s.predictions.list_pools(status_enum, int(request.args.get("limit", 100)))

        return jsonify({"pools": [p.model_dump(mode="json") for p in call(_list)]})

    @app.route("/api/predictions/<pool_id>")
    def predictions_get(pool_id: str) -> Any:
        async def _get(s: Services) -> Any:
            return s.predictions.get_pool(pool_id)

        return jsonify({"pool": call(_get).model_dump(mode="json")})

    # ─── Wallet ──────────────────────────────────────────────────────

    def _address() -> str:
        address = request.args.get("address", "")
        if not address:
            raise ValidationError("missing wallet address")
        return address

    @app.route("/api/wallet/transactions", methods=["POST"])
    def wallet_record_swap() -> Any:
        data = body()
        require(
            data, "wallet_address", "side", "token_address", "tx_hash",
            "token_amount", "native_amount", "price_usd",
        )
        try:
            amounts = {
                "token_amount": float(data["token_amount"]),
                "native_amount": float(data["native_amount"]),
                "price_usd": float(data["price_usd"]),
                "gas_used": int(data.get("gas_used") or 0),
                "gas_price_wei": int(data.get("gas_price_wei") or 0),
            }
            timestamp = float(data["timestamp"]) if data.get("timestamp") is not None else None
        except (TypeError, ValueError):
            raise ValidationError("amounts, gas and timestamp must be numeric")

        async def _record(s: Services) -> Any:
            return s.tx_log.record_swap(
                data["wallet_address"], data["side"], data["token_address"], data["tx_hash"],
                token_symbol=data.get("token_symbol", ""), timestamp=timestamp, **amounts,
            )

        tx = call(_record)
        return jsonify({"success": True, "transaction": tx.model_dump(mode="json")}), 201

    @app.route("/api/wallet/positions")
    def wallet_positions() -> Any:
        address = _address()

        async def _positions(s: Services) -> Any:
            return await get_positions(s.tx_log, s.oracle, address)

        return jsonify({"positions": [p.to_dict() for p in call(_positions)]})

    @app.route("/api/wallet/pnl")
    def wallet_pnl() -> Any:
        address = _address()

        async def _pnl(s: Services) -> Any:
            return await wallet_summary(s.tx_log, s.oracle, address)

        return jsonify(call(_pnl).to_dict())

    @app.route("/api/wallet/tax-report")
    def wallet_tax_report() -> Any:
        address = _address()
        try:
            year = int(request.args.get("year") or datetime.now(timezone.utc).year)
        except ValueError:
            raise ValidationError("year must be an integer")

        async def _report(s: Services) -> Any:
            return generate_tax_report(s.tx_log, address, year)

        return jsonify(call(_report).to_dict())

    return app
