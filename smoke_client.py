"""Manual smoke client for a running roomchat server.

Usage:
    uvicorn app.main:app --app-dir backend --port 3000
    python smoke_client.py [room_id]
"""
import asyncio
import json
import sys

import websockets


async def smoke(room_id: str) -> None:
    async with websockets.connect(f"ws://localhost:3000/chat/{room_id}") as ws:
        # Claim an identity first, the server ignores everything else until then
        await ws.send(json.dumps({"type": "setUsername", "username": "smoke-test"}))
        assigned = json.loads(await ws.recv())
        print(f"Assigned: {assigned}")

        await ws.send(json.dumps({"text": "Hello from Python!"}))

        # History and notices may arrive before the echo
        while True:
            msg = json.loads(await ws.recv())
            print(f"Received: {msg}")
            if msg.get("username") == "smoke-test":
                break


if __name__ == "__main__":
    asyncio.run(smoke(sys.argv[1] if len(sys.argv) > 1 else "lobby"))
