"""
huddle - live speaker-labelled meeting transcription in the terminal.

Usage:
    huddle
    huddle --title "Weekly sync" --output notes/
    huddle --screen-names --bbox 0,0,1280,800
    huddle --list-devices
"""

import argparse
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

from .errors import HuddleError
from .logger import get_logger
from .utils import ConfigManager

logger = get_logger("cli")

# Seconds to wait for the final transcription of the last utterance
SHUTDOWN_TIMEOUT = 30.0


def parse_bbox(value: str):
    try:
        left, top, right, bottom = (int(v) for v in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError("bbox must be four integers: left,top,right,bottom")
    return left, top, right, bottom


class CaptionPrinter:
    """Prints final lines once, and the newest interim line in place."""

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout
        self._printed = set()
        self._interim_width = 0

    def __call__(self, entries):
        for entry in entries:
            if entry.is_final and entry.id not in self._printed:
                self._printed.add(entry.id)
                self._clear_interim()
                stamp = time.strftime("%H:%M:%S", time.localtime(entry.timestamp))
                self.stream.write(f"[{stamp}] {entry.speaker}: {entry.text}\n")

        interim = [e for e in entries if not e.is_final]
        if interim:
            line = f"  ... {interim[-1].speaker}: {interim[-1].text}"
            self._clear_interim()
            self.stream.write(line)
            self._interim_width = len(line)
        self.stream.flush()

    def _clear_interim(self):
        if self._interim_width:
            self.stream.write("\r" + " " * self._interim_width + "\r")
            self._interim_width = 0


def list_devices() -> int:
    from . import capture

    if capture.sd is None:
        print("sounddevice/PortAudio is not available.")
        return 1
    print(capture.sd.query_devices())
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="Live speaker-labelled meeting transcription")
    parser.add_argument("--title", "-t", help="Meeting title used in the export")
    parser.add_argument("--output", "-o", help="File or folder for the transcript (default: transcript.output_dir)")
    parser.add_argument("--json", action="store_true", help="Save the export as JSON instead of markdown")
    parser.add_argument("--config", "-c", help="Path to config.yaml")
    parser.add_argument("--screen-names", action="store_true",
                        help="Read participant names off the screen with Tesseract OCR")
    parser.add_argument("--bbox", type=parse_bbox,
                        help="Screen region with the meeting window: left,top,right,bottom")
    parser.add_argument("--local-gain", type=float, help="Microphone gain (0-3)")
    parser.add_argument("--remote-gain", type=float, help="System audio gain (0-3)")
    parser.add_argument("--threshold", type=float, help="Speaking threshold (0-1)")
    parser.add_argument("--no-save", action="store_true", help="Do not save a transcript on exit")
    parser.add_argument("--list-devices", action="store_true", help="List audio devices and exit")

    args = parser.parse_args(argv)

    load_dotenv()
    ConfigManager.initialize(config_path=args.config)

    if args.list_devices:
        return list_devices()

    from .orchestrator import TranscriptionOrchestrator

    orchestrator = TranscriptionOrchestrator()
    orchestrator.on_update(CaptionPrinter())

    frame_source = None
    if args.screen_names:
        from .names import ScreenFrameSource
        frame_source = ScreenFrameSource(bbox=args.bbox)

    try:
        orchestrator.initialize(frame_source=frame_source)
    except HuddleError as e:
        logger.error(f"Initialization failed: {e}")
        print(f"[!] {e}")
        return 1

    if args.local_gain is not None or args.remote_gain is not None:
        local = args.local_gain if args.local_gain is not None else orchestrator.mixer.get_gain("local")
        remote = args.remote_gain if args.remote_gain is not None else orchestrator.mixer.get_gain("remote")
        orchestrator.adjust_audio_levels(local, remote)
    if args.threshold is not None:
        orchestrator.set_speaking_threshold(args.threshold)

    orchestrator.start()
    print("Listening... press Ctrl+C to finish.")
    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        print()

    orchestrator.stop()
    # The session transcribes the utterance in progress before it ends
    orchestrator.wait_stopped(timeout=SHUTDOWN_TIMEOUT)
    export = orchestrator.export_transcript(title=args.title)
    print(export.summary)

    if not args.no_save:
        target = args.output
        if args.json:
            base = Path(target) if target else None
            if base is None or base.is_dir() or not base.suffix:
                folder = base or Path(ConfigManager.get_config_value('transcript', 'output_dir') or Path.cwd() / "Transcripts")
                target = Path(folder) / export.default_filename(".json")
            else:
                target = base.with_suffix(".json")
        try:
            export.save(target)
        except OSError as e:
            logger.error(f"Could not save transcript: {e}")
            print(f"[!] Could not save transcript: {e}")

    orchestrator.cleanup()
    return 0


if __name__ == "__main__":
    sys.exit(main())
