import argparse
import json
import os
import sys
from typing import Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + "/api/v1" + path


def _headers(args: argparse.Namespace) -> Dict[str, str]:
    return {"X-Tenant-Id": args.tenant, "X-User-Id": args.user}


def _print_chunk(chunk: dict) -> None:
    kind = chunk.get("type")
    if kind == "route":
        print(f"[route: {chunk.get('route')} ({chunk.get('confidence', 0):.2f})]", file=sys.stderr)
    elif kind == "content":
        print(chunk.get("content", ""), end="", flush=True)
    elif kind == "citation":
        citation = chunk.get("citation") or {}
        print(f"\n[{citation.get('index')}] {citation.get('title')} - {citation.get('url')}", file=sys.stderr)
    elif kind == "function_call":
        print(f"[calling {chunk.get('name')}]", file=sys.stderr)
    elif kind == "function_result":
        print(f"[{chunk.get('summary')}]", file=sys.stderr)
    elif kind == "suggestions":
        print("\nSuggestions: " + " | ".join(chunk.get("suggestions") or []))
    elif kind == "done":
        print(f"\n[session: {chunk.get('session_id')}]", file=sys.stderr)
        suggested = chunk.get("suggested_memory")
        if suggested:
            print(f"[suggested memory ({suggested.get('type')}): {suggested.get('content')}]", file=sys.stderr)
    elif kind == "error":
        print(f"\nError: {chunk.get('error')}", file=sys.stderr)


def run_chat(args: argparse.Namespace) -> int:
    payload = {"message": args.message, "stream": True}
    if args.session:
        payload["session_id"] = args.session
    if args.client:
        payload["client_id"] = args.client
    with httpx.Client(timeout=None) as client:
        with client.stream("POST", _join_url(args.base_url, "/chat"), json=payload, headers=_headers(args)) as resp:
            if resp.status_code >= 400:
                resp.read()
                print(f"Chat failed: HTTP {resp.status_code} {resp.text}")
                return 1
            status = 0
            for line in resp.iter_lines():
                if not line.startswith("data:"):
                    continue
                chunk = json.loads(line[len("data:"):].strip())
                _print_chunk(chunk)
                if chunk.get("type") == "error":
                    status = 1
    return status


def run_sessions_list(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/chat/sessions"), headers=_headers(args), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list sessions: HTTP {resp.status_code}")
            return 1
        for session in resp.json().get("sessions") or []:
            title = session.get("title") or "Untitled chat"
            print(f"{session['id']}  {session.get('updated_at')}  {session.get('message_count', 0):>4}  {title}")
    return 0


def run_memory(args: argparse.Namespace) -> int:
    headers = _headers(args)
    with httpx.Client() as client:
        if args.memory_cmd in ("list", "search"):
            params = {"q": args.query} if args.memory_cmd == "search" else {}
            if args.client:
                params["client_id"] = args.client
            resp = client.get(_join_url(args.base_url, "/memory"), params=params, headers=headers, timeout=10)
        elif args.memory_cmd == "clear-session":
            resp = client.delete(_join_url(args.base_url, f"/memory/sessions/{args.session}"), headers=headers, timeout=10)
        elif args.memory_cmd == "offboard":
            if not args.yes:
                print("Refusing to delete every memory of the tenant without --yes.")
                return 1
            resp = client.delete(
                _join_url(args.base_url, "/memory"), params={"scope": "tenant", "confirm": "true"}, headers=headers, timeout=30
            )
        else:
            return 1
        if resp.status_code >= 400:
            print(f"Memory request failed: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    if "memories" in data:
        for memory in data["memories"]:
            score = f" ({memory['score']:.2f})" if memory.get("score") is not None else ""
            print(f"{memory['id']}  [{memory['type']}/{memory['importance']}]{score} {memory['content']}")
    else:
        print(f"Deleted {data.get('deleted', 0)} memories.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agency chat core CLI")
    parser.add_argument("--base-url", default=os.getenv("CHATCORE_API_BASE", DEFAULT_API_BASE), help="API base URL")
    parser.add_argument("--tenant", default=os.getenv("CHATCORE_TENANT_ID", ""), help="Tenant (agency) id")
    parser.add_argument("--user", default=os.getenv("CHATCORE_USER_ID", ""), help="User id")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Send a message and stream the answer")
    chat.add_argument("message")
    chat.add_argument("--session", help="Continue an existing session")
    chat.add_argument("--client", help="Client the conversation is about")

    sessions = subparsers.add_parser("sessions", help="Chat sessions")
    sessions_sub = sessions.add_subparsers(dest="sessions_cmd")
    sessions_sub.add_parser("list", help="List recent sessions")

    memory = subparsers.add_parser("memory", help="Memory management")
    memory_sub = memory.add_subparsers(dest="memory_cmd")
    memory_list = memory_sub.add_parser("list", help="List memories")
    memory_list.add_argument("--client", help="Only memories about this client")
    memory_search = memory_sub.add_parser("search", help="Search memories")
    memory_search.add_argument("query")
    memory_search.add_argument("--client", help="Only memories about this client")
    clear_session = memory_sub.add_parser("clear-session", help="Delete memories tagged with a session")
    clear_session.add_argument("session")
    offboard = memory_sub.add_parser("offboard", help="Delete every memory of the tenant")
    offboard.add_argument("--yes", action="store_true", help="Confirm the deletion")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command and (not args.tenant or not args.user):
        print("--tenant and --user (or CHATCORE_TENANT_ID / CHATCORE_USER_ID) are required.")
        return 1
    if args.command == "chat":
        return run_chat(args)
    if args.command == "sessions" and args.sessions_cmd == "list":
        return run_sessions_list(args)
    if args.command == "memory" and args.memory_cmd:
        return run_memory(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
