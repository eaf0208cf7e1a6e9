import argparse
import json
import sys
import uuid
from typing import List, Optional
from urllib.parse import quote

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _cookie_header(args: argparse.Namespace) -> dict:
    parts = []
    if args.model:
        provider_id, _, model_name = args.model.partition(":")
        descriptor = {
            "id": model_name,
            "name": model_name,
            "provider": provider_id,
            "providerId": provider_id,
            "toolCallType": "manual" if args.manual else "native",
        }
        if args.tool_model:
            descriptor["toolCallModel"] = args.tool_model
        parts.append("selectedModel=" + quote(json.dumps(descriptor)))
    if args.search:
        parts.append("search-mode=true")
    if args.user:
        parts.append(f"user-id={args.user}")
    return {"cookie": "; ".join(parts)} if parts else {}


def _print_event(event: dict, show_reasoning: bool) -> None:
    kind = event.get("type")
    if kind == "text-delta":
        sys.stdout.write(event.get("textDelta", ""))
        sys.stdout.flush()
    elif kind == "reasoning-delta" and show_reasoning:
        sys.stderr.write(event.get("textDelta", ""))
        sys.stderr.flush()
    elif kind == "tool-call":
        print(f"\n[tool] {event.get('toolName')} {json.dumps(event.get('args') or {})}", file=sys.stderr)
    elif kind == "tool-result":
        result = event.get("result") or {}
        status = "ok" if result.get("success") else f"failed: {result.get('error')}"
        print(f"[tool] {event.get('toolName')} {status}", file=sys.stderr)
    elif kind == "annotation":
        value = event.get("value") or {}
        if value.get("type") == "related-questions":
            items = (value.get("data") or {}).get("items") or []
            if items:
                print("\nRelated:")
                for item in items:
                    print(f"- {item.get('query')}")
        elif value.get("type") == "error":
            print(f"\nError: {(value.get('data') or {}).get('message')}", file=sys.stderr)
    elif kind == "error":
        print(f"\nError: {event.get('error')}", file=sys.stderr)


def run_chat(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {
        "id": args.chat_id or uuid.uuid4().hex,
        "messages": [{"id": uuid.uuid4().hex, "role": "user", "content": " ".join(args.prompt)}],
    }
    with httpx.Client(timeout=None) as client:
        with client.stream("POST", _join_url(base, "/chat"), json=payload, headers=_cookie_header(args)) as resp:
            if resp.status_code >= 400:
                resp.read()
                print(f"Chat failed: HTTP {resp.status_code} {resp.text}")
                return 1
            for line in resp.iter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                _print_event(json.loads(data), args.reasoning)
    print()
    print(f"chat id: {payload['id']}", file=sys.stderr)
    return 0


def run_models_list(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/models"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch models: HTTP {resp.status_code}")
            return 1
        models = resp.json().get("models") or []
    if not models:
        print("No models available. Configure a provider API key first.")
        return 0
    for model in models:
        print(f"{model.get('providerId')}:{model.get('id')}  ({model.get('toolCallType', 'native')})")
    return 0


def run_chats_list(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    headers = {"cookie": f"user-id={args.user}"} if args.user else {}
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/chats"), headers=headers, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch chats: HTTP {resp.status_code}")
            return 1
        chats = resp.json().get("chats") or []
    for chat in chats:
        print(f"{chat.get('id')}  {chat.get('updated_at')}  {chat.get('title')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Aham Chat CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--user", help="user-id cookie value")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Send a message and stream the answer")
    chat.add_argument("--model", help="provider:model, e.g. openai:gpt-4o-mini")
    chat.add_argument("--manual", action="store_true", help="Use prompt-based tool selection")
    chat.add_argument("--tool-model", help="Model used for manual tool selection")
    chat.add_argument("--search", action="store_true", help="Enable tools for this turn")
    chat.add_argument("--reasoning", action="store_true", help="Echo reasoning to stderr")
    chat.add_argument("--chat-id", help="Continue or name a chat")
    chat.add_argument("prompt", nargs="+", help="Message text")

    models = subparsers.add_parser("models", help="List available models")
    models.add_subparsers(dest="models_cmd").add_parser("list", help="List available models")

    chats = subparsers.add_parser("chats", help="Saved chat history")
    chats.add_subparsers(dest="chats_cmd").add_parser("list", help="List saved chats")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chat":
        return run_chat(args)
    if args.command == "models":
        return run_models_list(args)
    if args.command == "chats":
        return run_chats_list(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
