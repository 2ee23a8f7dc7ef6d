import argparse
import sys
import threading
from typing import Optional

import uvicorn

from attendance_companion.config import CompanionSettings, RecognitionSettings
from attendance_companion.confirmation import ConfirmationChannel
from attendance_companion.exceptions import AttendanceError
from attendance_companion.logger import setup_logger
from attendance_companion.session import SessionManager, SessionRequest, SessionRuntime, opencv_runtime_factory

POLL_SECONDS = 0.5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Attendance companion: live face recognition for a class session"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the local companion HTTP service")
    serve.add_argument("--host", default=None, help="Host interface (default from environment)")
    serve.add_argument("--port", type=int, default=None, help="Port (default from environment)")

    session = subparsers.add_parser("session", help="Run one headless recognition session")
    session.add_argument("--session-id", required=True, help="Attendance session ID")
    session.add_argument("--section-id", default=None, help="Section ID (enables roster and event relay)")
    session.add_argument("--model", required=True, help="LBPH model file or directory containing lbph.yml")
    session.add_argument("--cascade", required=True, help="Haar cascade XML path")
    session.add_argument("--labels", default=None, help="labels.txt path (default next to the model)")
    session.add_argument("--scheduled-start", default=None, help="ISO-8601 scheduled start")
    session.add_argument("--scheduled-end", default=None, help="ISO-8601 scheduled end (enables auto-stop)")
    session.add_argument("--late-threshold", type=int, default=None, help="Minutes after start before marking late")
    session.add_argument("--token", default=None, help="Companion access token")
    session.add_argument("--backend-url", default=None, help="Backend base URL override")

    return parser


def prompt_confirmations(channel: ConfirmationChannel, stop_event: threading.Event) -> None:
    while not stop_event.wait(POLL_SECONDS):
        for request in channel.pending():
            try:
                reply = input(f"Is this {request.student_name}? [y/N] ")
            except EOFError:
                return
            channel.answer(request.request_id, reply.strip().lower() in {"y", "yes"})


def run_session(manager: SessionManager, args: argparse.Namespace) -> None:
    request = SessionRequest(
        session_id=args.session_id,
        section_id=args.section_id,
        model_path=args.model,
        cascade_path=args.cascade,
        labels_path=args.labels,
        auth_token=args.token,
        scheduled_start=args.scheduled_start,
        scheduled_end=args.scheduled_end,
        late_threshold_minutes=args.late_threshold,
        backend_base_url=args.backend_url,
    )
    manager.start_session(request)
    session: Optional[SessionRuntime] = manager.active_session()
    print(f"Session {args.session_id} running. Press Ctrl+C to stop.")

    stop_event = threading.Event()
    runtime = session.recognition_runtime if session is not None else None
    channel = runtime.confirmation_ui if runtime is not None else None
    if isinstance(channel, ConfirmationChannel):
        threading.Thread(
            target=prompt_confirmations,
            args=(channel, stop_event),
            name="companion-cli-confirmations",
            daemon=True,
        ).start()

    try:
        while session is not None and not session.closed:
            stop_event.wait(POLL_SECONDS)
    finally:
        stop_event.set()
        manager.shutdown()


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    settings = CompanionSettings.from_env()
    manager = SessionManager(settings, opencv_runtime_factory(RecognitionSettings.from_env()))

    try:
        if args.command == "serve":
            from attendance_companion.web_app import create_web_app

            app = create_web_app(manager)
            uvicorn.run(
                app,
                host=args.host or settings.host,
                port=args.port or settings.port,
                log_level="info",
            )
            return 0

        if args.command == "session":
            run_session(manager, args)
            print("Session stopped.")
            return 0

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
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
