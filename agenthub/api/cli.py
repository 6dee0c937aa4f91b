"""
Interactive terminal adapter for agenthub.

Architectural role:
- Terminal counterpart of `/api/terminal/chat/stream`.
- Builds the same `ServiceContainer` as the HTTP server and talks to the
  dispatcher directly.

Interface responsibilities:
- Keep the active agent pointer and a fixed session id for the whole run.
- Expose local commands for agent switching, memory search, backups and status.
- Print streamed answers chunk by chunk.

Request lifecycle (per user turn):
1. Read stdin.
2. Handle local commands (`exit`/`quit`, `/agent`, `/agents`, `/search`,
   `/backup`, `/restore`, `/status`).
3. Stream normal text to the active agent under the CLI session id.

Error handling strategy:
- Typed errors are printed as `Error: <message>` and the loop continues.
- EOF and keyboard interrupts end the loop without traceback output.

Side effects:
- Writes memory turns and backups through the shared services.
- Saves the usage snapshot on exit (when configured).
"""

import asyncio
import json
import sys
import uuid

from agenthub.api.main import configure_logging
from agenthub.config import Settings
from agenthub.core.services import ServiceContainer
from agenthub.core.types import CHUNK_ERROR, CHUNK_REASONING, GenerationOptions
from agenthub.errors import AgentHubError


DEFAULT_AGENT = "flowi-ceo"

SEPARATOR = "-" * 60


# =========================================================
# UTF-8 SAFE OUTPUT
# =========================================================

if hasattr(sys.stdout, "reconfigure"):
    try:
        sys.stdout.reconfigure(encoding="utf-8", errors="ignore")
    except (AttributeError, ValueError):
        pass


# =========================================================
# LOCAL COMMANDS
# =========================================================

def print_agents(services, active_agent):
    print("\nAvailable agents:")
    for agent in services.registry.list():
        marker = " (active)" if agent.id == active_agent else ""
        print(f" - {agent.id}: {agent.name}{marker}")
    print()


def print_status(services):
    status = services.status()
    memory = status["memory"]
    usage = status["usage"]

    print("\nSTATUS:")
    print(f"Agents loaded: {status['agents']['total']}")
    if memory.get("status") == "active":
        print(f"Memory: {memory['turns']} turns in {memory['sessions']} sessions")
    else:
        print("Memory: unavailable")
    print(f"Calls: {usage['totals']['calls']}  Cost: {usage['totals']['cumulativeCost']}")
    print(f"Dispatcher: {json.dumps(status['dispatcher'])}\n")


def run_search(services, query):
    memory = services.require_memory()
    hits = memory.semantic_search(query, 5)
    if not hits:
        print("\nNo matching turns.\n")
        return
    print()
    for hit in hits:
        turn = hit.turn
        print(f"[{hit.score:.3f}] ({turn.session_id}/{turn.agent_id}) {turn.user_message}")
    print()


def run_backup(services):
    memory = services.require_memory()
    backup = memory.create_backup()
    target = backup.get("file", "in-memory export")
    print(f"\nBackup created: {target} ({backup['turnCount']} turns)\n")


def run_restore(services, path):
    memory = services.require_memory()
    with open(path, "r", encoding="utf-8") as f:
        backup = json.load(f)
    restored = memory.load_backup(backup)
    print(f"\nRestored {restored} turns from {path}\n")


async def stream_answer(services, agent_id, prompt, session_id):
    """Stream one answer to stdout. Returns the accumulated text."""
    options = GenerationOptions(session_id=session_id, streaming=True)
    handle = await services.dispatcher.stream(agent_id, prompt, options)

    events = handle.events()
    try:
        async for chunk in events:
            if chunk.type == CHUNK_ERROR:
                print(f"\n[error] {chunk.error}")
            elif chunk.type == CHUNK_REASONING:
                continue
            elif chunk.content:
                print(chunk.content, end="", flush=True)
    finally:
        await events.aclose()
    print()
    return handle.text


# =========================================================
# MAIN
# =========================================================

def main():
    """
    Run the interactive terminal session.

    Error handling strategy:
    - Startup failures (invalid agent catalog) abort with a message.
    - Per-turn typed errors are printed and the loop continues.
    """
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    services = ServiceContainer(settings=settings)
    try:
        services.start()
    except (OSError, ValueError) as e:
        print(f"Startup error: {e}")
        return

    active_agent = DEFAULT_AGENT if DEFAULT_AGENT in services.registry else services.registry.list()[0].id
    session_id = f"cli-{uuid.uuid4().hex[:12]}"

    print("agenthub terminal started. (Type 'exit' to quit)")
    print(f"Active agent: {active_agent}")
    print(f"Session: {session_id}")
    print(SEPARATOR)

    try:
        while True:

            try:
                line = input("You: ").strip()

            except EOFError:
                print("\nEOF received.")
                break

            except KeyboardInterrupt:
                print("\nOperation cancelled by user.")
                break

            if not line:
                continue

            command = line.lower()

            if command in ("exit", "quit"):
                print("Shutting down.")
                break

            try:
                if command == "/agents":
                    print_agents(services, active_agent)
                    continue

                if command.startswith("/agent"):
                    parts = line.split()
                    if len(parts) < 2:
                        print(f"\nUsage: /agent <id>  (current: {active_agent})\n")
                        continue
                    agent = services.registry.get(parts[1])
                    active_agent = agent.id
                    print(f"\nSwitched to agent: {agent.name}\n")
                    continue

                if command.startswith("/search"):
                    query = line[len("/search"):].strip()
                    run_search(services, query)
                    continue

                if command == "/backup":
                    run_backup(services)
                    continue

                if command.startswith("/restore"):
                    path = line[len("/restore"):].strip()
                    if not path:
                        print("\nUsage: /restore <backup file>\n")
                        continue
                    run_restore(services, path)
                    continue

                if command == "/status":
                    print_status(services)
                    continue

                print(f"\n{active_agent}:\n")
                asyncio.run(stream_answer(services, active_agent, line, session_id))
                print("\n" + SEPARATOR + "\n")

            except AgentHubError as e:
                print(f"\nError: {e.message}\n")

            except (OSError, ValueError) as e:
                print(f"\nError: {e}\n")

            except KeyboardInterrupt:
                print("\nGeneration cancelled.\n")

    finally:
        services.stop()


if __name__ == "__main__":
    main()
