import logging
from typing import Any

import click
from flask import Flask, jsonify, request
from flask_cors import CORS

from chainballot.algorand_client import AlgorandLedgerClient
from chainballot.auth import AuthService
from chainballot.config import Settings
from chainballot.db import ConnectionPool, ensure_schema
from chainballot.errors import AuthError, ChainBallotError, Forbidden, ValidationError
from chainballot.models import User, parse_datetime
from chainballot.reconciliation import ReconciliationService
from chainballot.store import PostgresStore

logger = logging.getLogger(__name__)


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "0", "no"):
        return False
    raise ValidationError("Boolean value expected")


def _optional_int(value: Any, field_name: str) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name} must be an integer") from exc


def _candidate_list(value: Any) -> list[dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError("candidates must be a list")
    return [item if isinstance(item, dict) else {"name": str(item)} for item in value]


def _body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _build_ledger(settings: Settings) -> AlgorandLedgerClient | None:
    if not settings.ledger_configured:
        logger.warning("Algorand settings incomplete; running with the database only")
        return None
    try:
        return AlgorandLedgerClient.from_settings(settings)
    except (RuntimeError, ValueError) as exc:
        logger.error("Ledger client disabled: %s", exc)
        return None


def create_app(settings: Settings | None = None, store=None, ledger=None) -> Flask:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = Flask(__name__)
    CORS(app, origins=settings.cors_origins)

    pool = None
    if store is None:
        pool = ConnectionPool(
            settings.database_url,
            settings.db_pool_min,
            settings.db_pool_max,
            settings.db_sslmode,
        )
        store = PostgresStore(pool)
    if ledger is None:
        ledger = _build_ledger(settings)

    service = ReconciliationService(store, ledger)
    auth = AuthService(store, settings.session_secret, settings.session_ttl_seconds)
    app.extensions["chainballot"] = {"service": service, "auth": auth, "store": store, "ledger": ledger}

    @app.errorhandler(ChainBallotError)
    def handle_error(exc: ChainBallotError):
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, exc.message)
        return jsonify(exc.to_dict()), exc.http_status

    def current_user() -> User:
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            raise AuthError("Missing bearer session token")
        return auth.get_current_user(auth_header.split(" ", 1)[1].strip())

    def require_admin() -> User:
        user = current_user()
        if not user.is_admin:
            raise Forbidden("Admin access required")
        return user

    # Auth

    @app.route("/auth/register", methods=["POST"])
    def register():
        data = _body()
        user = auth.register(
            str(data.get("name", "")),
            str(data.get("email", "")),
            str(data.get("password", "")),
        )
        return jsonify({"success": True, "data": user.to_dict()}), 201

    @app.route("/auth/login", methods=["POST"])
    def login():
        data = _body()
        result = auth.login(
            str(data.get("email", "")),
            str(data.get("password", "")),
            is_admin=_flag(data.get("isAdmin"), False),
        )
        return jsonify({"success": True, **result})

    @app.route("/auth/me", methods=["GET"])
    def me():
        return jsonify({"success": True, "data": current_user().to_dict()})

    # Elections

    @app.route("/elections", methods=["POST"])
    def create_election():
        admin = require_admin()
        data = _body()
        result = service.create_election(
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            start_time=parse_datetime(data.get("startTime"), "startTime"),
            end_time=parse_datetime(data.get("endTime"), "endTime"),
            is_active=_flag(data.get("isActive"), True),
            created_by=admin.id,
            candidates=_candidate_list(data.get("candidates")),
            on_chain=_flag(data.get("onChain"), True),
            ledger_id=_optional_int(data.get("ledgerId"), "ledgerId"),
            blockchain_tx_hash=data.get("blockchainTxHash") or None,
        )
        return jsonify(result.to_dict()), 201

    @app.route("/elections", methods=["GET"])
    def list_elections():
        return jsonify(service.list_elections().to_dict())

    @app.route("/elections/<key>", methods=["GET"])
    def get_election(key: str):
        return jsonify({"success": True, "data": service.get_election(key).to_dict()})

    @app.route("/elections/<key>", methods=["PUT"])
    def update_election(key: str):
        require_admin()
        data = _body()
        election = service.update_election(
            key,
            title=data.get("title"),
            description=data.get("description"),
            start_time=parse_datetime(data["startTime"], "startTime") if data.get("startTime") else None,
            end_time=parse_datetime(data["endTime"], "endTime") if data.get("endTime") else None,
        )
        return jsonify({"success": True, "data": election.to_dict()})

    @app.route("/elections/<key>/status", methods=["PUT"])
    def set_status(key: str):
        require_admin()
        data = _body()
        if "isActive" not in data:
            raise ValidationError("isActive is required")
        result = service.set_election_status(key, _flag(data["isActive"], True))
        return jsonify(result.to_dict())

    @app.route("/elections/<key>", methods=["DELETE"])
    def delete_election(key: str):
        require_admin()
        return jsonify(service.delete_election(key).to_dict())

    @app.route("/elections/<key>/candidates", methods=["POST"])
    def add_candidate(key: str):
        require_admin()
        data = _body()
        result = service.add_candidate(
            key,
            name=str(data.get("name", "")),
            description=str(data.get("description", "")),
            party=data.get("party"),
            image_url=data.get("imageUrl") or data.get("image"),
        )
        return jsonify(result.to_dict()), 201

    @app.route("/elections/<key>/candidates/<candidate_id>", methods=["PUT"])
    def update_candidate(key: str, candidate_id: str):
        require_admin()
        data = _body()
        candidate = service.update_candidate(
            key,
            candidate_id,
            name=data.get("name"),
            description=data.get("description"),
            party=data.get("party"),
            image_url=data.get("imageUrl") or data.get("image"),
        )
        return jsonify({"success": True, "data": candidate.to_dict()})

    @app.route("/elections/<key>/candidates/<candidate_id>", methods=["DELETE"])
    def delete_candidate(key: str, candidate_id: str):
        require_admin()
        return jsonify({"success": True, "data": service.delete_candidate(key, candidate_id)})

    @app.route("/elections/<key>/voters", methods=["GET"])
    def list_voters(key: str):
        require_admin()
        entries = service.list_voters(key)
        data = [
            {"electionId": e.election_id, "voterId": e.voter_id, "hasVoted": e.has_voted, "voteTx": e.vote_tx}
            for e in entries
        ]
        return jsonify({"success": True, "count": len(data), "data": data})

    @app.route("/elections/<key>/votes", methods=["GET"])
    def list_votes(key: str):
        require_admin()
        votes = [v.to_dict() for v in service.list_votes(key)]
        return jsonify({"success": True, "count": len(votes), "data": votes})

    @app.route("/elections/<key>/voters", methods=["POST"])
    def add_voter(key: str):
        require_admin()
        voter_id = str(_body().get("voterId", "")).strip()
        if not voter_id:
            raise ValidationError("voterId is required")
        entry = service.add_voter(key, voter_id)
        return (
            jsonify(
                {
                    "success": True,
                    "data": {
                        "electionId": entry.election_id,
                        "voterId": entry.voter_id,
                        "hasVoted": entry.has_voted,
                    },
                }
            ),
            201,
        )

    @app.route("/elections/<key>/vote", methods=["POST"])
    def vote(key: str):
        user = current_user()
        candidate_id = _body().get("candidateId")
        if candidate_id in (None, ""):
            raise ValidationError("candidateId is required")
        result = service.cast_vote(user, key, candidate_id)
        return jsonify(result.to_dict()), 201

    @app.route("/elections/<key>/results", methods=["GET"])
    def results(key: str):
        return jsonify({"success": True, **service.results(key)})

    # Verification and maintenance

    @app.route("/votes/verify", methods=["POST"])
    def verify_vote():
        tx_hash = str(_body().get("transactionHash", ""))
        return jsonify({"success": True, "data": service.verify_vote(tx_hash)})

    @app.route("/admin/voters/<user_id>/verify", methods=["POST"])
    def verify_voter(user_id: str):
        require_admin()
        return jsonify(service.verify_voter(user_id).to_dict())

    @app.route("/admin/reconcile", methods=["POST"])
    def reconcile():
        require_admin()
        return jsonify({"success": True, "data": service.reconcile()})

    @app.route("/health", methods=["GET"])
    def health():
        status = service.health()
        healthy = status["store"] or status["ledger"]
        body = {"status": "ok" if all(status.values()) else "degraded", **status}
        return jsonify(body), 200 if healthy else 503

    # CLI

    @app.cli.command("init-db")
    def init_db():
        """Create tables and indexes."""
        if pool is None:
            raise click.ClickException("init-db needs the PostgreSQL store")
        ensure_schema(pool)
        click.echo("Schema ready")

    @app.cli.command("create-admin")
    @click.option("--name", required=True)
    @click.option("--email", required=True)
    @click.password_option()
    def create_admin(name: str, email: str, password: str):
        """Register an admin account."""
        user = auth.register(name, email, password, role="admin")
        click.echo(f"Admin {user.email} created with id {user.id}")

    return app


def main() -> None:
    app = create_app()
    ensure_schema(app.extensions["chainballot"]["store"].pool)
    app.run(debug=False)


if __name__ == "__main__":
    main()
