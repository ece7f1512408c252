"""
claudebox CLI.

Usage:
    claudebox serve                    # Run the broker in the foreground
    claudebox token USER_ID            # Mint a development token
    claudebox doctor                   # Run diagnostics
    claudebox attach                   # Attach this terminal to a session
"""

import argparse
import asyncio
import codecs
import os
import shutil
import signal
import socket
import subprocess
import sys
from typing import Optional

import httpx

from claudebox.config import get_config_path, get_settings


# --- Helpers ---


def _get_server_url() -> str:
    """Resolve server URL from the configured port."""
    settings = get_settings()
    return f"http://localhost:{settings.port}"


def _port_in_use(port: int) -> bool:
    """Check if a port is already in use."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex(("127.0.0.1", port)) == 0


def _api_get(url: str) -> dict:
    """Make a GET request to the server API."""
    response = httpx.get(url, timeout=5, headers={"Accept": "application/json"})
    response.raise_for_status()
    return response.json()


def _read_input(fd: int, decoder: codecs.IncrementalDecoder) -> str:
    """Read pending keyboard input, holding back a partial UTF-8 sequence."""
    return decoder.decode(os.read(fd, 4096))


# --- Commands ---


def cmd_serve(args: argparse.Namespace) -> None:
    """Run the server in the foreground."""
    if args.port:
        os.environ["PORT"] = str(args.port)
        from claudebox.config import reload_settings
        reload_settings()

    from claudebox.server import main as server_main
    server_main()


def cmd_token(args: argparse.Namespace) -> None:
    """Print a signed token for local development."""
    from claudebox.lib.auth import issue_token

    settings = get_settings()
    if not settings.jwt_secret:
        print("JWT_SECRET is not set", file=sys.stderr)
        sys.exit(1)

    print(issue_token(
        settings.jwt_secret,
        args.user_id,
        email=args.email or "",
        ttl_seconds=args.ttl,
        audience=settings.jwt_audience,
        algorithm=settings.jwt_algorithm,
    ))


def cmd_doctor(args: argparse.Namespace) -> None:
    """Run diagnostics and report pass/warn/fail for each check."""
    settings = get_settings()
    results = []

    def check(name: str, fn):
        try:
            ok, detail = fn()
            status = "PASS" if ok else "WARN"
            results.append((status, name, detail))
        except Exception as e:
            results.append(("FAIL", name, str(e)))

    # 1. Python version
    def check_python():
        v = sys.version_info
        version_str = f"{v.major}.{v.minor}.{v.micro}"
        if v >= (3, 11):
            return True, version_str
        return False, f"{version_str} (requires >= 3.11)"

    check("Python version", check_python)

    # 2. Secrets
    def check_secrets():
        missing = settings.missing_secrets()
        if missing:
            return False, f"missing {', '.join(missing)}"
        return True, "JWT_SECRET and ANTHROPIC_API_KEY set"

    check("Secrets", check_secrets)

    # 3. Config file
    def check_config():
        config_file = get_config_path(settings.data_dir)
        if not config_file.exists():
            return True, "no config.yaml (using env and defaults)"
        return True, str(config_file)

    check("Config file", check_config)

    # 4. Docker and sandbox image
    def check_docker():
        if not shutil.which("docker"):
            return False, "docker not found"
        result = subprocess.run(["docker", "info"], capture_output=True, timeout=5)
        if result.returncode != 0:
            return False, "docker not running"

        result = subprocess.run(
            ["docker", "image", "inspect", settings.sandbox_image],
            capture_output=True,
            timeout=5,
        )
        if result.returncode != 0:
            return False, f"running, image '{settings.sandbox_image}' not found"
        return True, f"running, image '{settings.sandbox_image}' ready"

    check("Docker", check_docker)

    # 5. Port availability
    def check_port():
        port = settings.port
        if _port_in_use(port):
            try:
                _api_get(f"http://localhost:{port}/api/health")
                return True, f"port {port} in use by claudebox server"
            except Exception:
                return False, f"port {port} in use by another process"
        return True, f"port {port} available"

    check("Port", check_port)

    # Print results
    print("\nclaudebox doctor")
    print("=" * 40)

    for status, name, detail in results:
        icon = {"PASS": "+", "WARN": "!", "FAIL": "x"}[status]
        print(f"  [{icon}] {name}: {detail}")

    passes = sum(1 for s, _, _ in results if s == "PASS")
    warns = sum(1 for s, _, _ in results if s == "WARN")
    fails = sum(1 for s, _, _ in results if s == "FAIL")
    print(f"\n  {passes} passed, {warns} warnings, {fails} failures")

    if fails:
        sys.exit(1)


def cmd_attach(args: argparse.Namespace) -> None:
    """Attach the local terminal to a new session."""
    token = args.token or os.environ.get("CLAUDEBOX_TOKEN", "")
    if not token:
        print("No token (use --token or CLAUDEBOX_TOKEN)", file=sys.stderr)
        sys.exit(1)

    try:
        code = asyncio.run(_attach(args.url or _get_server_url(), token, args.project))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


async def _attach(server_url: str, token: str, project_path: Optional[str]) -> int:
    import termios
    import tty

    from claudebox.client import ConnectionFailedError, ConnectionManager

    manager = await ConnectionManager.from_server(server_url, token, auto_reconnect=False)
    done: asyncio.Future = asyncio.get_running_loop().create_future()

    def on_message(message: dict) -> None:
        msg_type = message.get("type")
        if msg_type == "output":
            sys.stdout.write(message.get("data", ""))
            sys.stdout.flush()
        elif msg_type == "exit" and not done.done():
            done.set_result(int(message.get("code", 0)))
        elif msg_type == "status" and message.get("status") == "error" and not done.done():
            sys.stderr.write(f"\r\nSession failed: {message.get('error')}\r\n")
            done.set_result(1)
        elif msg_type == "error":
            sys.stderr.write(f"\r\n[claudebox] {message.get('error')}\r\n")

    manager.add_handler(on_message)
    try:
        await manager.connect()
    except ConnectionFailedError as e:
        print(f"Could not connect: {e}", file=sys.stderr)
        return 1

    loop = asyncio.get_running_loop()
    stdin_fd = sys.stdin.fileno()
    saved = termios.tcgetattr(stdin_fd)

    def send_size() -> None:
        cols, rows = shutil.get_terminal_size()
        asyncio.ensure_future(manager.resize(cols, rows))

    decoder = codecs.getincrementaldecoder("utf-8")("replace")

    def on_stdin() -> None:
        text = _read_input(stdin_fd, decoder)
        if text:
            asyncio.ensure_future(manager.send_input(text))

    try:
        tty.setraw(stdin_fd)
        await manager.start_session(project_path)
        send_size()
        loop.add_reader(stdin_fd, on_stdin)
        loop.add_signal_handler(signal.SIGWINCH, send_size)
        return await done
    finally:
        loop.remove_reader(stdin_fd)
        loop.remove_signal_handler(signal.SIGWINCH)
        termios.tcsetattr(stdin_fd, termios.TCSADRAIN, saved)
        await manager.disconnect()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="claudebox",
        description="claudebox - sandboxed coding-assistant sessions",
    )
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server in the foreground")
    serve_parser.add_argument("--port", "-p", type=int, help="Override the HTTP port")

    # token
    token_parser = subparsers.add_parser("token", help="Mint a development token")
    token_parser.add_argument("user_id", help="Subject (user id) for the token")
    token_parser.add_argument("--email", help="Email claim")
    token_parser.add_argument(
        "--ttl", type=int, default=3600,
        help="Lifetime in seconds (default: 3600)",
    )

    # doctor
    subparsers.add_parser("doctor", help="Run diagnostics")

    # attach
    attach_parser = subparsers.add_parser("attach", help="Attach this terminal to a session")
    attach_parser.add_argument("--url", help="Server URL (default: http://localhost:PORT)")
    attach_parser.add_argument("--token", help="Bearer token (default: $CLAUDEBOX_TOKEN)")
    attach_parser.add_argument("--project", help="Workspace subdirectory")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "token":
        cmd_token(args)
    elif args.command == "doctor":
        cmd_doctor(args)
    elif args.command == "attach":
        cmd_attach(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
