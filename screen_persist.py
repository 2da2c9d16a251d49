"""
screen_persist.py  –  Store & restore multi-frame screen layouts
================================================================

File format: one JSON document, no schema/version field:

    [ [ {frame attributes}, [ [screen_id, <layout>], ... ] ],   # selected frame
      [ {frame attributes}, [ ... ] ],                          # other frames
      ... ]

Key behaviours
  · The frame selected at store time is always written first; on restore
    it is the one that gets input focus back.
  · Screens are written least-recently-used first, so replaying them in
    order leaves the most-recently-used screen current.
  · Layout blobs come from the host's layout codec and are never looked
    into here.
  · Frames are paired with stored configs purely by position.  Reordering
    live frames between store and restore changes which config lands on
    which frame; frames have no identity across sessions.
  · At most max_frame_num frames are restored; extra configs are dropped.
  · The file is only replaced once the whole snapshot has been captured
    and serialised (temp file + rename).
  · A corrupt file raises MalformedSnapshot before anything live is touched.

The host is any object with the frame / screen / layout methods of
session_host.SessionHost.
"""

import argparse
import atexit
import dataclasses
import json
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from session_host import (
    SessionHost,
    SessionLocked,
    acquire_lock,
    atomic_write,
    release_lock,
)

# ══════════════════════════════════════════════════════════════════════════
#  Constants
# ══════════════════════════════════════════════════════════════════════════
CONFIG_PATH          = "config.json"
DEFAULT_SESSION_PATH = "session.json"
DEFAULT_CONFIG_FILE  = os.path.join("~", ".screen-persist", "screens.json")
DEFAULT_MAX_FRAMES   = 5

MIN_SCREEN_ID = 0
MAX_SCREEN_ID = 9

# Upper bound on screen-restore iterations: ten ids plus up to nine
# create-and-retry rounds.
MAX_SCREEN_ITERATIONS = 19

# Frame attributes that point at live buffers / UI state.
EXCLUDED_FRAME_KEYS = ("buffer_list", "buried_buffer_list", "minibuffer")


class MalformedSnapshot(ValueError):
    """Stored data is not a well-formed snapshot."""


class ScreenConfig(NamedTuple):
    screen_id: int
    layout: Any


class FrameConfig(NamedTuple):
    attributes: Dict[str, Any]
    screens: List[ScreenConfig]


Snapshot = List[FrameConfig]


# ══════════════════════════════════════════════════════════════════════════
#  Configuration
# ══════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class PersistConfig:
    """
    config_file       where the snapshot lives (``~`` is expanded)
    store_frame_keys  falsy  -> store no frame attributes
                      list   -> store only these attribute names
                      other  -> store everything but EXCLUDED_FRAME_KEYS
    max_frame_num     ceiling on frames created / restored
    """
    config_file: str = DEFAULT_CONFIG_FILE
    store_frame_keys: Any = True
    max_frame_num: int = DEFAULT_MAX_FRAMES

    def __post_init__(self) -> None:
        if not isinstance(self.config_file, str) or not self.config_file.strip():
            raise ValueError("config_file must be a non-empty path string")
        n = self.max_frame_num
        if not isinstance(n, int) or isinstance(n, bool) or n < 1:
            raise ValueError(f"max_frame_num must be a positive integer, got {n!r}")
        keys = self.store_frame_keys
        if isinstance(keys, (list, tuple)):
            if not all(isinstance(k, str) for k in keys):
                raise ValueError("store_frame_keys entries must be strings")
            object.__setattr__(self, "store_frame_keys", tuple(keys))

    @property
    def path(self) -> str:
        return os.path.expanduser(self.config_file)


def load_config(path: str = CONFIG_PATH) -> PersistConfig:
    if not os.path.exists(path):
        return PersistConfig()
    with open(path, encoding="utf-8") as f:
        d = json.load(f)
    if not isinstance(d, dict):
        raise ValueError(f"{path}: expected a JSON object")
    return PersistConfig(**{k: d[k] for k in
                            ("config_file", "store_frame_keys", "max_frame_num")
                            if k in d})


# ══════════════════════════════════════════════════════════════════════════
#  Capture
# ══════════════════════════════════════════════════════════════════════════
def _filter_frame_params(params: Dict[str, Any], store_frame_keys: Any) -> Dict[str, Any]:
    if not store_frame_keys:
        return {}
    if isinstance(store_frame_keys, (list, tuple)):
        wanted = set(store_frame_keys) - set(EXCLUDED_FRAME_KEYS)
        return {k: v for k, v in params.items() if k in wanted}
    return {k: v for k, v in params.items() if k not in EXCLUDED_FRAME_KEYS}


def capture_screens(host) -> List[ScreenConfig]:
    """Layouts of the selected frame's screens, least-recently-used first."""
    original = host.current_screen()
    screens: List[ScreenConfig] = []
    try:
        for screen in reversed(host.screen_history()):
            host.goto_screen(screen)
            screens.append(ScreenConfig(screen, host.current_layout()))
    finally:
        host.goto_screen(original)
    return screens


def capture_snapshot(host, config: PersistConfig, verbose: bool = False) -> Snapshot:
    selected = host.selected_frame()
    frames   = [selected] + [f for f in host.frames() if f != selected]
    snapshot: Snapshot = []
    try:
        for idx, frame in enumerate(frames):
            host.select_frame(frame)
            attrs   = _filter_frame_params(host.frame_parameters(frame),
                                           config.store_frame_keys)
            screens = capture_screens(host)
            snapshot.append(FrameConfig(attrs, screens))
            if verbose:
                ids = ",".join(str(s.screen_id) for s in screens)
                print(f"  frame {idx}: screens [{ids}] attrs={sorted(attrs)}")
    finally:
        host.select_frame(selected)
    return snapshot


# ══════════════════════════════════════════════════════════════════════════
#  Codec
# ══════════════════════════════════════════════════════════════════════════
def serialize_snapshot(snapshot: Snapshot) -> str:
    return json.dumps(
        [[dict(fc.attributes), [[sc.screen_id, sc.layout] for sc in fc.screens]]
         for fc in snapshot],
        indent=2, ensure_ascii=False,
    )


def _is_pair(value) -> bool:
    return isinstance(value, list) and len(value) == 2


def _parse_screen(raw, where: str) -> ScreenConfig:
    if not _is_pair(raw):
        raise MalformedSnapshot(f"{where}: expected [screen_id, layout]")
    screen, layout = raw
    if (not isinstance(screen, int) or isinstance(screen, bool)
            or not MIN_SCREEN_ID <= screen <= MAX_SCREEN_ID):
        raise MalformedSnapshot(
            f"{where}: screen id must be an int in "
            f"[{MIN_SCREEN_ID}, {MAX_SCREEN_ID}], got {screen!r}")
    return ScreenConfig(screen, layout)


def _parse_snapshot(data) -> Snapshot:
    if not isinstance(data, list):
        raise MalformedSnapshot("top level must be a list of frames")
    snapshot: Snapshot = []
    for i, raw in enumerate(data):
        if not _is_pair(raw):
            raise MalformedSnapshot(f"frame {i}: expected [attributes, screens]")
        attrs, screens = raw
        if not isinstance(attrs, dict):
            raise MalformedSnapshot(f"frame {i}: attributes must be an object")
        if not isinstance(screens, list):
            raise MalformedSnapshot(f"frame {i}: screens must be a list")
        snapshot.append(FrameConfig(
            attrs, [_parse_screen(s, f"frame {i} screen {j}")
                    for j, s in enumerate(screens)]))
    return snapshot


def deserialize_snapshot(text) -> Snapshot:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedSnapshot(f"not valid JSON: {exc}") from exc
    except RecursionError as exc:
        raise MalformedSnapshot("nested too deeply") from exc
    return _parse_snapshot(data)


def write_snapshot(path: str, snapshot: Snapshot) -> None:
    atomic_write(path, serialize_snapshot(snapshot))


def read_snapshot(path: str) -> Optional[Snapshot]:
    """Stored snapshot, or None when the file does not exist."""
    try:
        with open(path, "rb") as f:
            raw = f.read()
    except FileNotFoundError:
        return None
    return deserialize_snapshot(raw)


# ══════════════════════════════════════════════════════════════════════════
#  Restore
# ══════════════════════════════════════════════════════════════════════════
def restore_screens(host, screens: Sequence[ScreenConfig], verbose: bool = False) -> List[int]:
    """
    Make the selected frame's screens match `screens`.

    A stored id that is not live yet gets a blank screen created and the
    same entry is retried.  Live screens that were never restored are
    killed afterwards, unless nothing could be restored at all.
    Returns the restored ids in restore order.
    """
    pending  = list(screens)
    restored: List[int] = []
    for _ in range(MAX_SCREEN_ITERATIONS):
        if not pending:
            break
        screen, layout = pending[0]
        if host.screen_live_p(screen):
            host.goto_screen(screen)
            host.apply_layout(layout)
            restored.append(screen)
            pending.pop(0)
        else:
            host.create_screen()

    if pending and verbose:
        print(f"  [warn] gave up on screens {[s for s, _ in pending]}")
    if not restored:
        return restored

    for screen in sorted(set(host.screen_list()) - set(restored)):
        host.kill_screen(screen)
        if verbose:
            print(f"  KILL    screen {screen}")
    return restored


def _target_frames(host, count: int, new_frames: bool) -> List:
    if new_frames:
        return [host.make_frame() for _ in range(count)]
    keep = host.selected_frame()
    for frame in host.frames():
        if frame != keep:
            host.delete_frame(frame)
    return [keep] + [host.make_frame() for _ in range(count - 1)]


def restore_frame_config(host, frame, frame_config: FrameConfig, verbose: bool = False) -> List[int]:
    host.select_frame(frame)
    host.modify_frame_parameters(frame, frame_config.attributes)
    return restore_screens(host, frame_config.screens, verbose=verbose)


def restore_snapshot(
    host,
    snapshot: Snapshot,
    config: PersistConfig,
    new_frames: bool = False,
    verbose: bool = False,
) -> int:
    """
    Rebuild frames/screens from `snapshot`.  Returns frames restored.

    Stored attributes are written over the target frame's own (merge by
    overwrite).  In replace mode the kept frame therefore also keeps any
    attribute that was not stored, rather than falling back to the
    platform default for it.
    """
    count = min(len(snapshot), config.max_frame_num)
    if count == 0:
        return 0
    if verbose and len(snapshot) > count:
        print(f"  [info] {len(snapshot) - count} frame configs over "
              f"max_frame_num={config.max_frame_num} dropped")

    targets = _target_frames(host, count, new_frames)
    for idx, (frame, frame_config) in enumerate(zip(targets, snapshot)):
        restored = restore_frame_config(host, frame, frame_config, verbose=verbose)
        if verbose:
            print(f"  FRAME   {idx} <- screens {restored}")

    host.focus_frame(targets[0])
    return count


# ══════════════════════════════════════════════════════════════════════════
#  Commands
# ══════════════════════════════════════════════════════════════════════════
def store(host, config: PersistConfig, verbose: bool = False) -> Snapshot:
    snapshot = capture_snapshot(host, config, verbose=verbose)
    write_snapshot(config.path, snapshot)
    screens = sum(len(fc.screens) for fc in snapshot)
    print(f"Stored {len(snapshot)} frames, {screens} screens -> {config.path}")
    return snapshot


def restore(host, config: PersistConfig, new_frames: bool = False,
            verbose: bool = False) -> bool:
    """Restore from config.path.  False (and a message) if there is no file."""
    snapshot = read_snapshot(config.path)
    if snapshot is None:
        print(f"No stored screens at {config.path}")
        return False
    count = restore_snapshot(host, snapshot, config, new_frames=new_frames,
                             verbose=verbose)
    note = f" (truncated from {len(snapshot)})" if len(snapshot) > count else ""
    print(f"Restored {count} frames from {config.path}{note}")
    return True


def resume_session(session_path: str, config: PersistConfig,
                   new_frames: bool = False,
                   verbose: bool = False) -> Optional[SessionHost]:
    """
    Lock and load a saved session, then restore the stored screens into it.

    Returns None (lock released, session untouched) when there is no stored
    file.  Otherwise the lock stays held; release it with
    session_host.release_lock().
    """
    acquire_lock(session_path)
    try:
        host = SessionHost.load(session_path)
        if verbose:
            print(f"  [info] resumed {len(host.frames())} frames from {session_path}")
        restored = restore(host, config, new_frames=new_frames, verbose=verbose)
    except BaseException:
        release_lock(session_path)
        raise
    if not restored:
        release_lock(session_path)
        return None
    return host


_autosave: Dict[str, Any] = {"handler": None}


def install_autosave(host, config: PersistConfig, verbose: bool = False) -> None:
    """Store the layout when the interpreter shuts down."""
    uninstall_autosave()

    def _handler() -> None:
        store(host, config, verbose=verbose)

    atexit.register(_handler)
    _autosave["handler"] = _handler


def uninstall_autosave() -> bool:
    handler = _autosave["handler"]
    if handler is None:
        return False
    atexit.unregister(handler)
    _autosave["handler"] = None
    return True


def show_snapshot(config: PersistConfig) -> bool:
    snapshot = read_snapshot(config.path)
    if snapshot is None:
        print(f"No stored screens at {config.path}")
        return False
    print(f"{config.path}: {len(snapshot)} frames")
    for idx, fc in enumerate(snapshot):
        ids = ",".join(str(s.screen_id) for s in fc.screens)
        print(f"  [{idx}] screens=[{ids}] attrs={','.join(sorted(fc.attributes)) or '-'}")
    return True


# ══════════════════════════════════════════════════════════════════════════
#  CLI entry point
# ══════════════════════════════════════════════════════════════════════════
def _config_from_args(args) -> PersistConfig:
    config = load_config(args.config)
    overrides: Dict[str, Any] = {}
    if args.config_file:
        overrides["config_file"] = args.config_file
    if args.max_frames is not None:
        overrides["max_frame_num"] = args.max_frames
    return dataclasses.replace(config, **overrides) if overrides else config


def main(argv: Optional[List[str]] = None) -> int:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=CONFIG_PATH,
                        help="JSON settings file")
    common.add_argument("--file", dest="config_file", default=None,
                        help="Snapshot file (overrides config_file)")
    common.add_argument("--max-frames", type=int, default=None,
                        help="Override max_frame_num")
    common.add_argument("--verbose", "-v", action="store_true")

    p = argparse.ArgumentParser(
        description="Store/restore multi-frame screen layouts."
    )
    s = p.add_subparsers(dest="cmd", required=True)

    sp = s.add_parser("store", parents=[common])
    sp.add_argument("--session", default=DEFAULT_SESSION_PATH)

    sp = s.add_parser("restore", parents=[common])
    sp.add_argument("--session", default=DEFAULT_SESSION_PATH)
    sp.add_argument("--new-frames", action="store_true",
                    help="Restore into new frames, keep existing ones")

    sp = s.add_parser("resume", parents=[common],
                      help="Resume a saved session, then restore screens")
    sp.add_argument("--session", default=DEFAULT_SESSION_PATH)
    sp.add_argument("--new-frames", action="store_true")

    s.add_parser("show", parents=[common])
    s.add_parser("help")

    args = p.parse_args(argv)

    if args.cmd == "help":
        print("""
Quick reference
  store:    python screen_persist.py store --session session.json [-v]
  restore:  python screen_persist.py restore --session session.json [--new-frames]
  resume:   python screen_persist.py resume --session session.json
  show:     python screen_persist.py show [--file screens.json]
""")
        return 0

    try:
        config = _config_from_args(args)

        if args.cmd == "store":
            host = SessionHost.load(args.session)
            store(host, config, verbose=args.verbose)
            return 0

        if args.cmd == "restore":
            host = SessionHost.load(args.session)
            if not restore(host, config, new_frames=args.new_frames,
                           verbose=args.verbose):
                return 1
            host.save(args.session)
            return 0

        if args.cmd == "resume":
            host = resume_session(args.session, config,
                                  new_frames=args.new_frames,
                                  verbose=args.verbose)
            if host is None:
                return 1
            try:
                host.save(args.session)
            finally:
                release_lock(args.session)
            return 0

        if args.cmd == "show":
            return 0 if show_snapshot(config) else 1

    except (MalformedSnapshot, SessionLocked, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
