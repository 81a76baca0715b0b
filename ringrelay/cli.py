#!/usr/bin/env python3
"""RingRelay CLI: run the webhook and inspect its sessions.

Usage:
    ringrelay serve      Start the webhook server
    ringrelay status     Show server health and session counts
    ringrelay sessions   List sessions
    ringrelay reset ID   Force a session back to idle
    ringrelay actions    List recent committed actions
    ringrelay config     Show/edit configuration
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from urllib.error import URLError
from urllib.request import urlopen

from ringrelay.config import CONFIG_FILE, load_config, save_config
from ringrelay.session_store import IDLE, MODES, PROCESSING, RECORDING, SessionStore

SECRET_KEYS = ("client_secret", "api_key", "app_secret", "webhook_secret")

# ── ANSI Colors ────────────────────────────────────────────────────────

class C:
    BOLD = "\033[1m"
    DIM = "\033[2m"
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    RESET = "\033[0m"

    @staticmethod
    def strip():
        """Disable colors if not a TTY."""
        if not sys.stdout.isatty():
            for attr in ["BOLD", "DIM", "GREEN", "RED", "YELLOW", "CYAN", "RESET"]:
                setattr(C, attr, "")

C.strip()

MODE_COLORS = {IDLE: C.DIM, RECORDING: C.YELLOW, PROCESSING: C.CYAN}

# ── Helpers ────────────────────────────────────────────────────────────

def check_health(port: int) -> dict | None:
    try:
        resp = urlopen(f"http://localhost:{port}/health", timeout=2)
        return json.loads(resp.read())
    except (URLError, OSError, ValueError):
        return None


def _open_store(cfg: dict) -> SessionStore:
    return SessionStore(cfg.get("storage", {}).get("db_path"))


def _fmt_ts(ts: float | None) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def redact(cfg: dict) -> dict:
    """Copy of cfg with secret values masked."""
    out = {}
    for key, value in cfg.items():
        if isinstance(value, dict):
            out[key] = redact(value)
        elif key in SECRET_KEYS and value:
            out[key] = "****"
        else:
            out[key] = value
    return out

# ── Commands ───────────────────────────────────────────────────────────

def cmd_serve(args):
    """Start the webhook server."""
    import uvicorn

    cfg = load_config()
    port = args.port or cfg["server"]["port"]
    host = args.host or cfg["server"]["host"]
    logging.basicConfig(
        level=getattr(logging, str(cfg.get("log_level", "INFO")).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print(f"{C.BOLD}{C.CYAN}⦿ RingRelay Server{C.RESET}", file=sys.stderr)
    print(f"  Webhook:   http://{host}:{port}/webhook", file=sys.stderr)
    print(f"  Database:  {cfg['storage']['db_path']}", file=sys.stderr)
    print(file=sys.stderr)

    uvicorn.run(
        "ringrelay.receiver:create_app",
        factory=True,
        host=host,
        port=port,
        log_level="info",
    )


def cmd_status(args):
    """Show server health and session counts."""
    print(f"\n{C.BOLD}{C.CYAN}⦿ RingRelay Status{C.RESET}\n")

    cfg = load_config()
    port = cfg["server"]["port"]
    health = check_health(port)
    if health:
        print(f"  {C.GREEN}●{C.RESET} Server        {C.GREEN}running{C.RESET} on port {port}")
    else:
        print(f"  {C.RED}●{C.RESET} Server        {C.RED}not running{C.RESET}")

    store = _open_store(cfg)
    try:
        counts = store.count_by_mode()
        failed = len(store.get_actions(status="failed", limit=1000))
    finally:
        store.close()

    print(f"\n  {C.BOLD}Sessions{C.RESET}")
    for mode in MODES:
        print(f"  {MODE_COLORS[mode]}{mode:<12}{C.RESET}{C.BOLD}{counts.get(mode, 0)}{C.RESET}")
    if failed:
        print(f"\n  {C.RED}{failed} failed action(s){C.RESET}, see `ringrelay actions`")
    print()


def cmd_sessions(args):
    """List sessions, optionally filtered by mode."""
    store = _open_store(load_config())
    try:
        sessions = store.scan(args.mode)
    finally:
        store.close()

    print(f"\n{C.BOLD}{C.CYAN}◎ Sessions{C.RESET}\n")
    if not sessions:
        print(f"  {C.DIM}No sessions.{C.RESET}\n")
        return
    for s in sessions:
        color = MODE_COLORS.get(s.mode, C.DIM)
        intent = s.intent_type or "-"
        print(f"  {color}●{C.RESET} {C.BOLD}{s.id}{C.RESET}  {color}{s.mode}{C.RESET}  "
              f"{intent}  {s.segment_count} seg  {C.DIM}{_fmt_ts(s.last_activity_at)}{C.RESET}")
        if s.accumulated_text:
            print(f"    {C.DIM}{s.accumulated_text[:100]}{C.RESET}")
    print()


def cmd_reset(args):
    """Force a session back to idle."""
    store = _open_store(load_config())
    try:
        if store.get(args.session_id) is None:
            print(f"{C.RED}No such session:{C.RESET} {args.session_id}")
            sys.exit(1)
        store.reset_session(args.session_id)
    finally:
        store.close()
    print(f"{C.GREEN}✓{C.RESET} Reset {C.BOLD}{args.session_id}{C.RESET} to idle")


def cmd_actions(args):
    """List recent actions."""
    store = _open_store(load_config())
    try:
        actions = store.get_actions(status=args.status, limit=args.limit)
    finally:
        store.close()

    print(f"\n{C.BOLD}{C.CYAN}⚡ Recent Actions{C.RESET}\n")
    if not actions:
        print(f"  {C.DIM}No actions recorded yet.{C.RESET}\n")
        return
    for a in actions:
        color = C.GREEN if a["status"] == "success" else C.RED
        print(f"  {color}●{C.RESET} {_fmt_ts(a['timestamp'])}  {C.BOLD}{a['intent']}{C.RESET}  "
              f"{a['result']}")
    print()


def cmd_config(args):
    """Show or edit config."""
    if args.set:
        key, _, value = args.set.partition("=")
        if not value:
            print(f"{C.RED}Usage: --set key=value{C.RESET}")
            return
        cfg = {}
        if CONFIG_FILE.exists():
            with open(CONFIG_FILE) as f:
                cfg = json.load(f)
        parts = key.split(".")
        obj = cfg
        for p in parts[:-1]:
            obj = obj.setdefault(p, {})
        if value.lower() == "true":
            value = True
        elif value.lower() == "false":
            value = False
        else:
            try:
                value = int(value)
            except ValueError:
                try:
                    value = float(value)
                except ValueError:
                    pass
        obj[parts[-1]] = value
        save_config(cfg)
        print(f"{C.GREEN}✓{C.RESET} Set {C.BOLD}{key}{C.RESET} = {value}")
        return

    print(f"\n{C.BOLD}{C.CYAN}⚙ Configuration{C.RESET}\n")
    print(f"  {C.DIM}File: {CONFIG_FILE}{C.RESET}\n")
    print(json.dumps(redact(load_config()), indent=2))
    print()

# ── Main ───────────────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        prog="ringrelay",
        description="RingRelay: Omi voice commands to RingCentral",
    )
    sub = parser.add_subparsers(dest="command")

    # serve
    p_serve = sub.add_parser("serve", help="Start the webhook server")
    p_serve.add_argument("--port", type=int, default=None)
    p_serve.add_argument("--host", default=None)

    # status
    sub.add_parser("status", help="Show server health and session counts")

    # sessions
    p_sessions = sub.add_parser("sessions", help="List sessions")
    p_sessions.add_argument("--mode", choices=list(MODES), default=None)

    # reset
    p_reset = sub.add_parser("reset", help="Force a session back to idle")
    p_reset.add_argument("session_id")

    # actions
    p_actions = sub.add_parser("actions", help="List recent actions")
    p_actions.add_argument("--limit", type=int, default=20)
    p_actions.add_argument("--status", choices=["success", "failed"], default=None)

    # config
    p_cfg = sub.add_parser("config", help="Show/edit configuration")
    p_cfg.add_argument("--set", default=None, metavar="KEY=VALUE")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    cmds = {
        "serve": cmd_serve,
        "status": cmd_status,
        "sessions": cmd_sessions,
        "reset": cmd_reset,
        "actions": cmd_actions,
        "config": cmd_config,
    }
    cmds[args.command](args)


if __name__ == "__main__":
    main()
