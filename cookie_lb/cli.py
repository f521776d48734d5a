from __future__ import annotations

import argparse
import copy
import os

import anyio
import uvicorn
import uvicorn.config

from cookie_lb.core.config.settings import Settings, get_settings


def _build_log_config(settings: Settings) -> dict:
    # Uvicorn's default LOGGING_CONFIG has no handler for the `cookie_lb.*` namespace.
    config = copy.deepcopy(uvicorn.config.LOGGING_CONFIG)
    loggers = config.setdefault("loggers", {})
    loggers["cookie_lb"] = {
        "handlers": ["default"],
        "level": settings.log_level.upper(),
        "propagate": False,
    }
    return config


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the cookie-lb gateway.")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8045")))
    parser.add_argument("--ssl-certfile", default=os.getenv("SSL_CERTFILE"))
    parser.add_argument("--ssl-keyfile", default=os.getenv("SSL_KEYFILE"))

    subparsers = parser.add_subparsers(dest="command")

    add_account = subparsers.add_parser("add-account", help="Register an upstream account in the pool.")
    add_account.add_argument("cookie_id")
    add_account.add_argument("--user-id", default=None, help="Owner of a dedicated account.")
    add_account.add_argument("--shared", action="store_true", help="Make the account usable by every user.")
    add_account.add_argument("--access-token", required=True)
    add_account.add_argument("--refresh-token", required=True)
    add_account.add_argument(
        "--expires-in",
        type=int,
        default=0,
        help="Seconds until the access token expires (default: 0, refreshed on first use).",
    )
    add_account.add_argument("--name", default=None)

    shared_quota = subparsers.add_parser("set-shared-quota", help="Set a user's shared quota pool balance.")
    shared_quota.add_argument("user_id")
    shared_quota.add_argument("model_name")
    shared_quota.add_argument("quota", type=float)

    return parser.parse_args()


def main() -> None:
    args = _parse_args()

    if args.command is None:
        settings = get_settings()
        if bool(args.ssl_certfile) ^ bool(args.ssl_keyfile):
            raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

        uvicorn.run(
            "cookie_lb.main:app",
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
            log_config=_build_log_config(settings),
            access_log=settings.access_log_enabled,
        )
        return

    if args.command == "add-account":
        from cookie_lb.core.utils.time import now_epoch_ms
        from cookie_lb.db.session import close_db, init_db, session_scope
        from cookie_lb.modules.accounts.repository import AccountsRepository

        if not args.shared and not args.user_id:
            raise SystemExit("Dedicated accounts need --user-id (or pass --shared).")

        async def _run() -> None:
            try:
                await init_db()
                async with session_scope() as session:
                    account = await AccountsRepository(session).add(
                        args.cookie_id,
                        user_id=args.user_id,
                        is_shared=1 if args.shared else 0,
                        access_token=args.access_token,
                        refresh_token=args.refresh_token,
                        expires_at=now_epoch_ms() + max(0, args.expires_in) * 1000,
                        name=args.name,
                    )
                print(f"added cookie_id={account.cookie_id} is_shared={account.is_shared}")
            finally:
                await close_db()

        anyio.run(_run)
        return

    if args.command == "set-shared-quota":
        from cookie_lb.db.session import close_db, init_db, session_scope
        from cookie_lb.modules.quota.repository import QuotaRepository

        async def _run() -> None:
            try:
                await init_db()
                async with session_scope() as session:
                    await QuotaRepository(session).set_shared_pool_balance(args.user_id, args.model_name, args.quota)
                print(f"shared_quota user_id={args.user_id} model={args.model_name} quota={args.quota}")
            finally:
                await close_db()

        anyio.run(_run)
        return

    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    main()
