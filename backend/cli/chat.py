from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

import httpx

from genchat.chat_view import AVAILABLE_MODELS, FREE_REQUEST_LIMIT, ChatView, ChatViewError, LocalStore

HELP = """Commands:
  /new            start a new chat
  /threads        list chats
  /use ID         switch to chat ID
  /model [ID]     show or pick the model
  /dark           toggle dark mode preference
  /delete-all     delete all chats
  /quit           exit"""


def log(msg: str) -> None:
    print(msg, file=sys.stderr)


class Printer:
    """Writes streamed text as it arrives."""

    def __init__(self) -> None:
        self.printed = 0

    def __call__(self, view: ChatView) -> None:
        content = view.streaming_content
        if not content:
            if self.printed:
                print()
            self.printed = 0
            return
        if len(content) > self.printed:
            print(content[self.printed :], end="", flush=True)
            self.printed = len(content)


async def sign_in(client: httpx.AsyncClient, email: str) -> bool:
    resp = await client.post("/api/auth/email-otp/send-verification-otp", json={"email": email})
    if resp.status_code >= 400:
        log(f"ERROR: could not send code: {resp.status_code} {resp.text}")
        return False
    code = (await asyncio.to_thread(input, f"Code sent to {email} (see server log): ")).strip()
    resp = await client.post("/api/auth/sign-in/email-otp", json={"email": email, "otp": code})
    if resp.status_code >= 400:
        log(f"ERROR: sign in failed: {resp.status_code} {resp.text}")
        return False
    log(f"Signed in as {resp.json()['user']['email']}")
    return True


async def handle_command(view: ChatView, line: str) -> bool:
    cmd, _, arg = line.partition(" ")
    arg = arg.strip()
    if cmd == "/quit":
        return False
    if cmd == "/new":
        thread_id = await view.new_thread()
        log(f"Started chat {thread_id}")
    elif cmd == "/threads":
        await view.refresh()
        for t in view.threads:
            marker = "*" if t["id"] == view.active_thread_id else " "
            log(f"{marker} {t['id']:>5}  {t['title']}")
        if not view.threads:
            log("No chats yet.")
    elif cmd == "/use" and arg.isdigit():
        view.select_thread(int(arg))
        for m in view.visible_messages():
            print(f"[{m['role']}] {m['content']}")
    elif cmd == "/model":
        if arg:
            view.set_model(arg)
        for m in AVAILABLE_MODELS:
            marker = "*" if m["id"] == view.selected_model else " "
            log(f"{marker} {m['id']}  ({m['name']}, {m['provider']})")
    elif cmd == "/dark":
        log(f"Dark mode {'on' if view.toggle_dark_mode() else 'off'}")
    elif cmd == "/delete-all":
        await view.delete_all_threads()
        log("All chats deleted.")
    else:
        log(HELP)
    return True


async def run(base_url: str, store_path: Path, email: str | None) -> int:
    printer = Printer()
    async with httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(None, connect=10.0)) as client:
        authenticated = bool(email) and await sign_in(client, str(email))
        if email and not authenticated:
            return 2
        view = ChatView(client, LocalStore(store_path), authenticated=authenticated, on_update=printer)
        if authenticated:
            await view.refresh()
        else:
            left = max(0, FREE_REQUEST_LIMIT - view.free_requests_used)
            log(f"Guest mode: {left} free message(s) remaining. Use --email to sign in.")

        while True:
            try:
                line = (await asyncio.to_thread(input, "> ")).strip()
            except EOFError:
                return 0
            if not line:
                continue
            try:
                if line.startswith("/"):
                    if not await handle_command(view, line):
                        return 0
                    continue
            except (ChatViewError, ValueError, httpx.HTTPError) as e:
                log(f"ERROR: {e}")
                continue

            await view.send(line)
            if view.last_error:
                log(f"ERROR: {view.last_error}")
            if view.show_auth_prompt:
                log("You've used your free message. Sign in with --email to keep chatting and save your history.")


def main() -> int:
    ap = argparse.ArgumentParser(description="Terminal client for the Gen Chat backend.")
    ap.add_argument("--base-url", type=str, default="http://localhost:8000", help="Backend base URL")
    ap.add_argument("--email", type=str, default="", help="Sign in with an email code (omit for guest mode)")
    ap.add_argument(
        "--store",
        type=Path,
        default=Path.home() / ".gen_chat.json",
        help="Local preferences file (model, theme, free-request counter)",
    )
    args = ap.parse_args()

    try:
        return asyncio.run(run(str(args.base_url).rstrip("/"), args.store, str(args.email).strip() or None))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
