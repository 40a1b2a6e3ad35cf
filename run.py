import argparse
import asyncio
import sys

import uvicorn

from face_companion.config import CAMERA_INDEX, DB_PATH, OWNER_ID
from face_companion.database import CompanionDatabase, parse_scheduled_time
from face_companion.exceptions import CompanionError
from face_companion.logger import setup_logger
from face_companion.models import DetectionResult, TaskStatus


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Face recognition companion with spoken names and task reminders"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    web = subparsers.add_parser("web", help="Serve the companion HTTP API")
    web.add_argument("--host", default="0.0.0.0", help="Host interface")
    web.add_argument("--port", type=int, default=8000, help="Port")
    web.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")

    watch = subparsers.add_parser("watch", help="Recognize people and speak reminders in this terminal")
    watch.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")
    watch.add_argument(
        "--seconds",
        type=float,
        default=0,
        help="Stop after N seconds (0 = run until Ctrl+C)",
    )
    watch.add_argument("--no-reminders", action="store_true", help="Do not speak task reminders")

    add_task = subparsers.add_parser("add-task", help="Schedule a task reminder")
    add_task.add_argument("--name", required=True, help="Task name, e.g. 'Take medicine'")
    add_task.add_argument(
        "--at",
        required=True,
        dest="scheduled_time",
        help="ISO date and time, e.g. 2024-05-01T09:30 (local time unless an offset is given)",
    )
    add_task.add_argument("--location", default=None, help="Optional place, e.g. 'the kitchen'")
    add_task.add_argument("--description", default=None, help="Optional notes")

    complete = subparsers.add_parser("complete-task", help="Mark a task completed or skipped")
    complete.add_argument("--id", required=True, dest="task_id", help="Task ID")
    complete.add_argument(
        "--status",
        choices=[status.value for status in TaskStatus],
        default=TaskStatus.COMPLETED.value,
        help="New status",
    )

    list_tasks = subparsers.add_parser("list-tasks", help="List scheduled tasks")
    list_tasks.add_argument(
        "--status",
        choices=[status.value for status in TaskStatus],
        default=None,
        help="Only show tasks with this status",
    )

    list_people = subparsers.add_parser("list-people", help="List people the companion knows")
    list_people.add_argument("--limit", type=int, default=100, help="Max rows to print")

    return parser


def _print_detection(result: DetectionResult) -> None:
    if result.is_known:
        print(f"[known] {result.name} ({result.confidence}%) - {result.enrichment}")
    else:
        print(f"[new person] {result.enrichment}")


async def _watch(camera_index: int, seconds: float, reminders: bool) -> None:
    from face_companion.companion import build_companion

    companion = build_companion(camera_index=camera_index)
    companion.on_detection(_print_detection)
    try:
        if reminders:
            await companion.start_reminders()
        await companion.start_loop()
        print("Watching. Press Ctrl+C to stop.")
        if seconds > 0:
            await asyncio.sleep(seconds)
        else:
            await asyncio.Event().wait()
    finally:
        await companion.close()


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        if args.command == "web":
            from face_companion.companion import build_companion
            from face_companion.web_app import create_web_app

            app = create_web_app(build_companion(camera_index=args.camera))
            uvicorn.run(app, host=args.host, port=args.port, log_level="info")
            return 0

        if args.command == "watch":
            asyncio.run(_watch(args.camera, args.seconds, reminders=not args.no_reminders))
            print("Companion stopped.")
            return 0

        if args.command == "add-task":
            db = CompanionDatabase(DB_PATH)
            task = db.create_task(
                OWNER_ID,
                args.name,
                parse_scheduled_time(args.scheduled_time),
                location=args.location,
                description=args.description,
            )
            print(f"Scheduled '{task.name}' for {task.scheduled_time:%Y-%m-%d %H:%M} (id {task.id}).")
            return 0

        if args.command == "complete-task":
            db = CompanionDatabase(DB_PATH)
            task = db.set_task_status(args.task_id, args.status)
            if task is None:
                print(f"No task with id {args.task_id}.")
                return 1
            print(f"Task '{task.name}' marked {task.status.value}.")
            return 0

        if args.command == "list-tasks":
            db = CompanionDatabase(DB_PATH)
            tasks = db.list_tasks(OWNER_ID, status=args.status)
            if not tasks:
                print("No tasks scheduled.")
                return 0

            print(f"{'Task ID':<34} {'When':<17} {'Status':<10} {'Task'}")
            print("-" * 90)
            for task in tasks:
                where = f" @ {task.location}" if task.location else ""
                print(
                    f"{task.id:<34} {task.scheduled_time:%Y-%m-%d %H:%M} "
                    f"{task.status.value:<10} {task.name}{where}"
                )
            return 0

        if args.command == "list-people":
            db = CompanionDatabase(DB_PATH)
            people = db.list_known_people(OWNER_ID)
            if not people:
                print("Nobody saved yet.")
                return 0

            print(f"{'Name':<24} {'Relationship':<16} {'Face data'}")
            print("-" * 52)
            for person in people[: args.limit]:
                face = "yes" if person.face_encoding else "no"
                print(f"{person.name:<24} {person.relationship or '-':<16} {face}")
            return 0

    except CompanionError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except ValueError as exc:
        logger.error("Invalid input: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
