"""
CLI chat client for a running gateway.

Initializes a widget session over HTTP, then opens the chat socket and
relays lines from stdin as user messages. Streamed tokens are printed as
they arrive; extraction updates are printed when a form schema is sent.

Usage:
    python scripts/chat_client.py --project-id demo-project
    python scripts/chat_client.py --base-url http://localhost:3001 --form-schema intake.json --form-type intake
"""

import argparse
import asyncio
import json
import os
import sys
from typing import Any

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

import httpx

from assistant_gateway.client.reconnect import ReconnectExhausted
from assistant_gateway.client.widget_client import GatewayClient
from assistant_gateway.logging_config import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)


async def init_session(base_url: str, project_id: str, metadata: dict[str, Any] | None) -> dict[str, Any]:
    body: dict[str, Any] = {"projectId": project_id, "widgetInstanceId": "cli"}
    if metadata:
        body["metadata"] = metadata
    async with httpx.AsyncClient(base_url=base_url, timeout=10.0) as client:
        response = await client.post("/widget/session/init", json=body)
        response.raise_for_status()
        return response.json()


async def print_frame(frame: dict[str, Any]) -> None:
    kind = frame.get("type")
    if kind == "token":
        print(frame.get("delta", ""), end="", flush=True)
    elif kind == "message":
        print()
    elif kind == "extraction_update":
        merged = {f["fieldName"]: f["value"] for f in frame.get("mergedFields", [])}
        print(f"\n[extraction] {json.dumps(merged)}")
    elif kind == "error":
        print(f"\n[error] {frame.get('errorCode')}: {frame.get('message')}")
    elif kind in ("session_ack", "status"):
        print(f"[{kind}] {frame.get('status')}")


async def read_stdin(client: GatewayClient) -> None:
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            await client.close()
            return
        text = line.strip()
        if text == "/end":
            await client.send({"type": "end_session"})
            continue
        if text:
            await client.connected.wait()
            await client.send_user_message(text)


async def chat(base_url: str, project_id: str, metadata: dict[str, Any] | None) -> None:
    session = await init_session(base_url, project_id, metadata)
    print(f"Session {session['sessionId']} (config v{session['configVersion']})")
    print(session.get("uiHints", {}).get("welcomeMessage", ""))

    client = GatewayClient(session["chat"]["wsUrl"], print_frame)
    reader = asyncio.create_task(read_stdin(client))
    try:
        await client.run()
    except ReconnectExhausted as e:
        print(f"Connection lost: {e}")
    finally:
        reader.cancel()


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with a running assistant gateway")
    parser.add_argument("--base-url", default="http://localhost:3001", help="Gateway HTTP base URL")
    parser.add_argument("--project-id", default="demo-project", help="Project ID of the seeded app")
    parser.add_argument("--form-schema", help="Path to a JSON form schema to enable extraction")
    parser.add_argument("--form-type", help="Form type for extraction (required with --form-schema)")

    args = parser.parse_args()

    metadata = None
    if args.form_schema:
        if not args.form_type:
            parser.error("--form-type is required with --form-schema")
        with open(args.form_schema) as f:
            metadata = {"formSchema": json.load(f), "formType": args.form_type}

    asyncio.run(chat(args.base_url, args.project_id, metadata))


if __name__ == "__main__":
    main()
