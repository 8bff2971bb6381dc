"""
Console Harness for the Assessment Builder

Simple console loop that drives one EditSession against the configured
content API. Actions are typed as JSON, e.g.

    > act {"type": "AddSection", "args": {"label": "Vitals"}}
"""

import asyncio
import json
import logging
import sys

from assessment_builder.commands import OpenAssessment, USER_ACTIONS, action_from_json
from assessment_builder.config import load_config
from assessment_builder.core.edit_session import EditSession
from assessment_builder.persistence import SessionPersistence
from assessment_builder.utils.content_api_client import AsyncContentApi, ContentApiClient

config = load_config()

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

HELP = """Commands:
  open <assessment_id>     open an assessment
  resume <assessment_id>   restore the latest snapshot, then open
  tree                     print the content tree with refs
  messages                 print the message log
  act <json>               perform an action ({"type": ..., "args": {...}})
  actions                  list action types
  quit                     leave (unsaved edits are lost)"""


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def print_tree(session):
    """Print sections, questions and answers with their refs"""
    tree = session.tree()
    tracker = session.tracker()

    def line(depth, entity):
        flags = []
        if tree.canonical_id(entity.ref) is None:
            flags.append("new")
        if tracker.get(entity.ref):
            flags.append("edited")
        if entity.is_deleted:
            flags.append("deleted")
        suffix = f"  [{', '.join(flags)}]" if flags else ""
        print(f"{'  ' * depth}{entity.ref}: {entity.label}{suffix}")

    def walk(ref, depth):
        entity = tree.get(ref)
        line(depth, entity)
        for child in tree.children(ref):
            walk(child, depth + 1)

    roots = tree.root_sections()
    if not roots:
        print("(empty)")
    for ref in roots:
        walk(ref, 0)

    stats = tree.get_summary_stats()
    print(f"\n{stats}")


def print_messages(session, limit=None):
    """Print the message log, newest last"""
    messages = session.messages()
    if limit:
        messages = messages[-limit:]
    for index, message in enumerate(messages):
        stage = f" ({message['stage']})" if message.get('stage') else ""
        print(f"[{index}] {message['severity'].upper()}{stage}: {message['message']}")


async def run_action(session, action):
    outcome = await session.perform(action)
    await session.drain()
    return outcome


def print_outcome(session, outcome, seen):
    """Print rejection, workflows and any messages posted since `seen`"""
    rejection = outcome.transition.rejection
    if rejection:
        print(f"Rejected ({rejection.command_type}): {rejection.reason}")
    if outcome.transition.created_ref is not None:
        print(f"Created ref {outcome.transition.created_ref}")
    for workflow in outcome.workflows:
        status = "OK" if workflow.ok else f"FAILED at {workflow.stage.value}"
        print(f"Workflow for ref {workflow.ref}: {status}")

    messages = session.messages()
    for message in messages[seen:]:
        print(f"  {message['severity'].upper()}: {message['message']}")


def main():
    """Run console harness"""
    print_separator()
    print("ASSESSMENT BUILDER - CONSOLE")
    print_separator()
    print(f"\nContent API: {config.api_root}")

    try:
        api = AsyncContentApi(ContentApiClient(config))
        persistence = SessionPersistence(base_dir=config.snapshot_dir)
    except Exception as e:
        print(f"\nFailed to initialize: {e}")
        import traceback
        traceback.print_exc()
        return 1

    session = EditSession(api, config, persistence=persistence)
    print(f"\n{HELP}\n")

    while True:
        try:
            user_input = input("> ").strip()
            if not user_input:
                continue

            command, _, rest = user_input.partition(" ")
            command = command.lower()
            rest = rest.strip()

            if command in ('quit', 'exit', 'stop'):
                if session.tracker().has_pending():
                    print("Unsaved edits will be lost.")
                break

            if command == 'help':
                print(HELP)
                continue

            if command == 'actions':
                print(", ".join(sorted(USER_ACTIONS)))
                continue

            if command == 'tree':
                print_tree(session)
                continue

            if command == 'messages':
                print_messages(session)
                continue

            if command in ('open', 'resume'):
                if not rest:
                    print("Usage: open <assessment_id>")
                    continue
                session.close()
                if command == 'resume':
                    session = EditSession.resume(api, persistence, rest, config)
                else:
                    session = EditSession(api, config, persistence=persistence)
                outcome = asyncio.run(run_action(session, OpenAssessment(rest)))
                print_outcome(session, outcome, 0)
                print_tree(session)
                continue

            if command == 'act':
                try:
                    action = action_from_json(json.loads(rest))
                except ValueError as e:
                    print(f"Bad action: {e}")
                    continue
                seen = len(session.messages())
                outcome = asyncio.run(run_action(session, action))
                print_outcome(session, outcome, seen)
                continue

            print(f"Unknown command: {command} (type 'help')")

        except KeyboardInterrupt:
            print("\n\nSession interrupted by user (Ctrl+C)")
            break

        except EOFError:
            break

    session.close()
    print_separator()
    print("Console session complete")
    print_separator()
    return 0


if __name__ == '__main__':
    sys.exit(main())
