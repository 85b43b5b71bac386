import argparse
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from face_roster.camera import OpenCVCameraSource
from face_roster.config import (
    CAMERA_INDEX,
    CAMERA_STREAMING,
    DB_PATH,
    DEVICE,
    EVENT_SINK_URL,
    FALLBACK_INTERVAL_SECONDS,
    MATCH_COOLDOWN_SECONDS,
    MATCH_THRESHOLD,
    MIN_INFERENCE_INTERVAL_SECONDS,
    MODEL_INPUT_SIZE,
    MODEL_PATH,
    THUMBNAIL_DIR,
)
from face_roster.debounce import RecognitionDebouncer
from face_roster.enrollment import EnrollmentController, EnrollmentMetadata
from face_roster.events import EventSink, HttpEventSink, MatchEvent, NullEventSink
from face_roster.exceptions import FaceRosterError, NoFaceCapturedError
from face_roster.logger import setup_logger
from face_roster.matcher import Matcher
from face_roster.model import TorchScriptEmbeddingModel
from face_roster.pipeline import FramePipeline, RecognitionStatus
from face_roster.roster import Roster
from face_roster.storage import KeyValueStore, ThumbnailStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="On-device face roster enrollment and live recognition"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_camera_options(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")
        sub.add_argument("--model", type=Path, default=MODEL_PATH, help="TorchScript embedding model")
        sub.add_argument(
            "--no-stream",
            action="store_true",
            default=not CAMERA_STREAMING,
            help="Use periodic still captures instead of frame streaming",
        )

    recognize = subparsers.add_parser("recognize", help="Run live recognition against the roster")
    add_camera_options(recognize)
    recognize.add_argument(
        "--threshold",
        type=float,
        default=MATCH_THRESHOLD,
        help="Maximum cosine distance accepted as a match",
    )
    recognize.add_argument(
        "--cooldown",
        type=float,
        default=MATCH_COOLDOWN_SECONDS,
        help="Seconds before the same identity is reported again",
    )
    recognize.add_argument("--sink-url", default=EVENT_SINK_URL, help="Optional HTTP endpoint for match events")

    enroll = subparsers.add_parser("enroll", help="Enroll or re-enroll the face currently in front of the camera")
    add_camera_options(enroll)
    enroll.add_argument("--name", required=True, help="Unique display name")
    enroll.add_argument("--id", required=True, dest="person_id", help="Person ID")
    enroll.add_argument("--department", required=True, help="Department")
    enroll.add_argument("--section", required=True, help="Section")
    enroll.add_argument("--wait", type=float, default=10.0, help="Seconds to wait for a captured face")

    delete = subparsers.add_parser("delete", help="Remove an identity and its thumbnail")
    delete.add_argument("name", help="Name of the identity to remove")
    delete.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")

    list_cmd = subparsers.add_parser("list", help="List enrolled identities")
    list_cmd.add_argument("--limit", type=int, default=100, help="Max rows to print")

    thumb = subparsers.add_parser("thumbnail", help="Write an identity's thumbnail to a file")
    thumb.add_argument("name", help="Name of the identity")
    thumb.add_argument("--output", type=Path, required=True, help="Output PNG path")

    return parser


def build_roster(embedding_dim: Optional[int] = None) -> Roster:
    roster = Roster(
        store=KeyValueStore(DB_PATH),
        thumbnails=ThumbnailStore(THUMBNAIL_DIR),
        embedding_dim=embedding_dim,
    )
    roster.load()
    return roster


def build_event_sink(url: str) -> EventSink:
    return HttpEventSink(url) if url else NullEventSink()


def build_pipeline(args: argparse.Namespace, **kwargs) -> FramePipeline:
    model = TorchScriptEmbeddingModel(args.model, input_size=MODEL_INPUT_SIZE, device=DEVICE)
    roster = build_roster(embedding_dim=model.output_dim)
    camera = OpenCVCameraSource(camera_index=args.camera, streaming=not args.no_stream)
    return FramePipeline(
        camera=camera,
        model=model,
        roster=roster,
        fallback_interval=FALLBACK_INTERVAL_SECONDS,
        min_interval=MIN_INFERENCE_INTERVAL_SECONDS,
        **kwargs,
    )


def run_recognize(args: argparse.Namespace) -> int:
    pipeline = build_pipeline(
        args,
        matcher=Matcher(threshold=args.threshold),
        debouncer=RecognitionDebouncer(cooldown=args.cooldown),
        event_sink=build_event_sink(args.sink_url),
    )
    if not len(pipeline.roster):
        print("Roster is empty; every face will be reported as Unknown.")

    last_label = {"value": None}

    def on_status(status: RecognitionStatus) -> None:
        if status.label != last_label["value"]:
            last_label["value"] = status.label
            print(f"{status.label} ({status.result.distance:.2f}, {status.result.confidence_level})")

    def on_match(event: MatchEvent) -> None:
        print(f"[match] {event.identity.name} id={event.identity.id} distance={event.distance:.3f}")

    pipeline.add_status_listener(on_status)
    pipeline.add_match_listener(on_match)
    pipeline.start()
    try:
        while True:
            time.sleep(0.5)
    finally:
        pipeline.stop()


def run_enroll(args: argparse.Namespace) -> int:
    pipeline = build_pipeline(args)
    controller = EnrollmentController(roster=pipeline.roster, pipeline=pipeline)
    captured = threading.Event()
    pipeline.add_status_listener(lambda _status: captured.set())

    pipeline.start()
    try:
        if not captured.wait(timeout=args.wait):
            raise NoFaceCapturedError(f"No face captured within {args.wait:.0f}s.")
        pipeline.pause()
        identity = controller.enroll_latest(
            EnrollmentMetadata(
                name=args.name,
                id=args.person_id,
                department=args.department,
                section=args.section,
            )
        )
    finally:
        pipeline.stop()

    print(f"Enrolled {identity.name} ({identity.id}).")
    return 0


def run_delete(args: argparse.Namespace) -> int:
    roster = build_roster()
    if not args.yes:
        answer = input(f"Delete {args.name}? [y/N] ").strip().lower()
        if answer not in {"y", "yes"}:
            print("Cancelled.")
            return 1

    EnrollmentController(roster=roster).delete(args.name)
    print(f"{args.name} removed.")
    return 0


def run_list(args: argparse.Namespace) -> int:
    roster = build_roster()
    identities = roster.snapshot()
    if not identities:
        print("No identities enrolled.")
        return 0

    print(f"{'Name':<24} {'ID':<12} {'Department':<16} {'Section'}")
    print("-" * 64)
    for identity in identities[: args.limit]:
        print(f"{identity.name:<24} {identity.id:<12} {identity.department:<16} {identity.section}")
    return 0


def run_thumbnail(args: argparse.Namespace) -> int:
    roster = build_roster()
    data = roster.thumbnail(args.name)
    if data is None:
        print(f"No thumbnail for {args.name}.")
        return 1
    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_bytes(data)
    print(f"Wrote {args.output}")
    return 0


COMMANDS = {
    "recognize": run_recognize,
    "enroll": run_enroll,
    "delete": run_delete,
    "list": run_list,
    "thumbnail": run_thumbnail,
}


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logger("main")

    try:
        return COMMANDS[args.command](args)
    except FaceRosterError as exc:
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


if __name__ == "__main__":
    sys.exit(main())
