"""Diagnostics helpers for the capture client."""
from __future__ import annotations

import argparse
import importlib
import json
import sys
from pathlib import Path
from typing import Sequence

from .config import CaptureConfig, ConfigManager
from .errors import StorageFault
from .marker import SessionMarkerStore
from .resources import ResourceGuard
from .storage import BackupStore, SegmentStore
from .version import APP_VERSION

DEFAULT_CONFIG_PATH = Path("data/capture/config.json")

SOUNDDEVICE_INSTALL_HINT = (
    "Install the audio extra with `pip install setlister-capture[audio]` and make sure the "
    "PortAudio library is present (`sudo apt install libportaudio2`)."
)
PYAV_INSTALL_HINT = "Install PyAV with `pip install av` (bundles FFmpeg on most platforms)."


def summarise_exception(exc: BaseException) -> str:
    text = str(exc).strip()
    return f"{exc.__class__.__name__}: {text}" if text else exc.__class__.__name__


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the diagnostics CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m setlister_capture.diagnostics",
        description="Setlister Capture diagnostics helpers",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to the capture configuration file.",
    )
    return parser


def diagnose_audio_stack() -> dict[str, object]:
    """Return diagnostic details about the audio capture and encoding stack."""

    status = "ok"
    details: list[str] = []
    hints: list[str] = []
    versions: dict[str, str] = {}

    def mark_error(detail: str, hint: str) -> None:
        nonlocal status
        status = "error"
        details.append(detail)
        if hint not in hints:
            hints.append(hint)

    modules = (
        ("av", "PyAV", PYAV_INSTALL_HINT),
        ("sounddevice", "sounddevice", SOUNDDEVICE_INSTALL_HINT),
    )
    for module_name, friendly, hint in modules:
        try:
            module = importlib.import_module(module_name)
        except ModuleNotFoundError:
            mark_error(f"{friendly} module not found.", hint)
            continue
        except (ImportError, OSError) as exc:  # pragma: no cover - depends on runtime environment
            mark_error(f"{friendly} import failed: {summarise_exception(exc)}", hint)
            continue
        version = getattr(module, "__version__", None)
        if isinstance(version, str):
            versions[module_name] = version
        if module_name == "av" and not hasattr(module, "AudioFrame"):
            mark_error("PyAV AudioFrame support unavailable.", PYAV_INSTALL_HINT)

    payload: dict[str, object] = {"status": status, "details": details}
    if hints:
        payload["hints"] = hints
    if versions:
        payload["versions"] = versions
    return payload


def collect_storage_status(config: CaptureConfig) -> dict[str, object]:
    """Summarise the session marker, pending backups and orphaned segments."""

    payload: dict[str, object] = {"data_dir": str(config.data_dir)}
    try:
        marker = SessionMarkerStore(config.marker_path).get()
        backups = BackupStore(config.backups_path)
        segments = SegmentStore(config.segments_path)
        backup_ids = backups.list_session_ids()
        segment_ids = segments.session_ids()
    except (StorageFault, OSError) as exc:
        payload["error"] = summarise_exception(exc)
        return payload

    active_id = marker.session_id if marker is not None else None
    payload["marker"] = marker.to_dict() if marker is not None else None
    pending: list[dict[str, object]] = []
    for session_id in backup_ids:
        record = backups.get(session_id)
        if record is not None:
            pending.append(record.describe())
    payload["pending_backups"] = pending
    payload["orphaned_sessions"] = [
        session_id for session_id in segment_ids if session_id != active_id
    ]
    return payload


def collect_diagnostics(
    config: CaptureConfig | None = None,
    *,
    guard: ResourceGuard | None = None,
) -> dict[str, object]:
    """Collect diagnostics payload used by the CLI."""

    config = config or CaptureConfig()
    guard = guard or ResourceGuard(config.guard)
    return {
        "version": APP_VERSION,
        "resources": guard.check_feasibility().to_dict(),
        "device": _describe_device(config.device),
        "audio": diagnose_audio_stack(),
        "storage": collect_storage_status(config),
    }


def _describe_device(choice: str) -> dict[str, str]:
    try:
        # Requires PyAV.
        from .device import describe_capture_device

        return {"choice": choice, **describe_capture_device(choice)}
    except (ImportError, OSError, ValueError) as exc:
        return {"choice": choice, "error": summarise_exception(exc)}


def _format_bytes(value: int) -> str:
    units = ("B", "KiB", "MiB", "GiB", "TiB")
    size = float(value)
    unit_index = 0
    while size >= 1024.0 and unit_index < len(units) - 1:
        size /= 1024.0
        unit_index += 1
    return f"{size:.1f} {units[unit_index]}" if unit_index else f"{int(size)} B"


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the diagnostics CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = ConfigManager(args.config).get()
    except RuntimeError as exc:
        print(f"Unable to load configuration: {exc}", file=sys.stderr)
        return 2

    payload = collect_diagnostics(config)
    if args.json:
        json.dump(payload, sys.stdout)
        sys.stdout.write("\n")
        return 0

    print(f"Setlister Capture diagnostics (version {APP_VERSION})")

    resources = payload["resources"]
    if resources.get("ok"):
        available = resources.get("available_bytes")
        suffix = f" ({_format_bytes(available)} available)" if isinstance(available, int) else ""
        print(f"Memory preflight: OK{suffix}")
    else:
        print(f"Memory preflight warning: {resources.get('reason')}")

    device = payload["device"]
    if "error" in device:
        print(f"Capture device: {device['error']}")
    else:
        print(f"Capture device: {device['label']} ({device['backend']})")

    audio = payload["audio"]
    if audio.get("status") == "ok":
        print("Audio stack: OK")
        for name, version in audio.get("versions", {}).items():
            print(f" - {name} {version}")
    else:
        print("Audio stack issues detected:")
        for detail in audio.get("details", []):
            print(f" - {detail}")
        hints = audio.get("hints")
        if hints:
            print("Hints:")
            for hint in hints:
                print(f" * {hint}")

    storage = payload["storage"]
    print(f"Data directory: {storage.get('data_dir')}")
    if "error" in storage:
        print(f" - Local storage unavailable: {storage['error']}")
        return 0
    marker = storage.get("marker")
    if marker:
        print(f" - Active session: {marker['session_id']} ({marker['status']})")
    else:
        print(" - No active session.")
    pending = storage.get("pending_backups") or []
    if pending:
        print(" - Backups awaiting upload:")
        for entry in pending:
            print(
                f"   {entry['session_id']}: {_format_bytes(int(entry['size_bytes']))}, "
                f"{float(entry['duration']):.1f}s"
            )
    orphaned = storage.get("orphaned_sessions") or []
    if orphaned:
        print(f" - Orphaned segments for: {', '.join(orphaned)}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m setlister_capture.diagnostics`."""

    return run(argv)


__all__ = [
    "build_parser",
    "collect_diagnostics",
    "collect_storage_status",
    "diagnose_audio_stack",
    "main",
    "run",
]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
