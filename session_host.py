"""
session_host.py  –  In-memory editor session backed by a JSON session file
==========================================================================

Stands in for the host editor: frames, their screens (ids 0-9, MRU
history) and one opaque layout blob per screen.  screen_persist.py only
talks to it through the frame / screen / layout methods below, so any
other host exposing the same methods can be dropped in.

Session file shape:
    {"frames":   [{"params": {...}, "history": [2, 0],
                   "screens": {"0": <layout>, "2": <layout>}}, ...],
     "selected": 0,
     "focused":  0}

A session being resumed is guarded by "<session>.lock" holding the owner
PID.  A lock whose PID is still alive (psutil) blocks the resume; a stale
one is taken over.
"""

import copy
import json
import os
import tempfile
from typing import Dict, List, Optional

import psutil

MAX_SCREENS    = 10
DEFAULT_LAYOUT = {"window": "*scratch*"}
DEFAULT_PARAMS = {"width": 80, "height": 36}


class SessionLocked(RuntimeError):
    """The session file is locked by another running process."""


# ══════════════════════════════════════════════════════════════════════════
#  File helpers
# ══════════════════════════════════════════════════════════════════════════
def atomic_write(path: str, text: str) -> None:
    """Write text to path via temp file + rename; path is untouched on failure."""
    folder = os.path.dirname(os.path.abspath(path))
    os.makedirs(folder, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=folder, prefix=".screen-persist-",
                                     suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def lock_path(path: str) -> str:
    return path + ".lock"


def _lock_owner(path: str) -> Optional[int]:
    try:
        with open(lock_path(path), encoding="utf-8") as f:
            raw = f.read().strip()
    except FileNotFoundError:
        return None
    return int(raw) if raw.isdigit() else None


def acquire_lock(path: str) -> None:
    owner = _lock_owner(path)
    if owner and owner != os.getpid() and psutil.pid_exists(owner):
        raise SessionLocked(f"Session {path} is in use by PID {owner}")
    atomic_write(lock_path(path), str(os.getpid()))


def release_lock(path: str) -> bool:
    """Remove the lock if this process owns it.  Returns True when removed."""
    if _lock_owner(path) != os.getpid():
        return False
    os.unlink(lock_path(path))
    return True


# ══════════════════════════════════════════════════════════════════════════
#  Host
# ══════════════════════════════════════════════════════════════════════════
class SessionHost:
    """Frames and screens of one editor session, kept in memory."""

    def __init__(self) -> None:
        self._frames: Dict[int, Dict] = {}
        self._order: List[int] = []
        self._next_id = 1
        self._selected: Optional[int] = None
        self._focused: Optional[int] = None
        first = self.make_frame()
        self._selected = self._focused = first

    # ── frame lifecycle ───────────────────────────────────────────────────
    def frames(self) -> List[int]:
        return list(self._order)

    def selected_frame(self) -> int:
        return self._selected

    def select_frame(self, frame: int) -> None:
        self._frame(frame)
        self._selected = frame

    def focused_frame(self) -> int:
        return self._focused

    def focus_frame(self, frame: int) -> None:
        self.select_frame(frame)
        self._focused = frame

    def make_frame(self) -> int:
        frame = self._next_id
        self._next_id += 1
        params = dict(DEFAULT_PARAMS)
        params.update({"buffer_list": [], "buried_buffer_list": [],
                       "minibuffer": True})
        self._frames[frame] = {
            "params":  params,
            "screens": {0: copy.deepcopy(DEFAULT_LAYOUT)},
            "history": [0],
        }
        self._order.append(frame)
        return frame

    def delete_frame(self, frame: int) -> None:
        self._frame(frame)
        if len(self._order) == 1:
            raise ValueError("Attempt to delete the sole frame")
        self._order.remove(frame)
        del self._frames[frame]
        if self._selected == frame:
            self._selected = self._order[0]
        if self._focused == frame:
            self._focused = self._selected

    def frame_parameters(self, frame: int) -> Dict:
        return copy.deepcopy(self._frame(frame)["params"])

    def modify_frame_parameters(self, frame: int, params: Dict) -> None:
        self._frame(frame)["params"].update(copy.deepcopy(params))

    # ── screens (selected frame) ──────────────────────────────────────────
    def screen_history(self) -> List[int]:
        """Screen ids, most recently used first."""
        return list(self._current()["history"])

    def screen_list(self) -> List[int]:
        return sorted(self._current()["screens"])

    def current_screen(self) -> int:
        return self._current()["history"][0]

    def screen_live_p(self, screen: int) -> bool:
        return screen in self._current()["screens"]

    def goto_screen(self, screen: int) -> None:
        fr = self._current()
        if screen not in fr["screens"]:
            raise KeyError(f"No screen {screen} on frame {self._selected}")
        fr["history"].remove(screen)
        fr["history"].insert(0, screen)

    def create_screen(self) -> Optional[int]:
        """Create a blank screen on the lowest free id and make it current."""
        fr = self._current()
        free = [i for i in range(MAX_SCREENS) if i not in fr["screens"]]
        if not free:
            return None
        screen = free[0]
        fr["screens"][screen] = copy.deepcopy(DEFAULT_LAYOUT)
        fr["history"].insert(0, screen)
        return screen

    def kill_screen(self, screen: int) -> bool:
        fr = self._current()
        if screen not in fr["screens"] or len(fr["screens"]) == 1:
            return False
        del fr["screens"][screen]
        fr["history"].remove(screen)
        return True

    # ── layout codec (current screen of selected frame) ───────────────────
    def current_layout(self):
        fr = self._current()
        return copy.deepcopy(fr["screens"][fr["history"][0]])

    def apply_layout(self, layout) -> None:
        fr = self._current()
        fr["screens"][fr["history"][0]] = copy.deepcopy(layout)

    # ── session file ──────────────────────────────────────────────────────
    def to_dict(self) -> Dict:
        frames = []
        for frame in self._order:
            fr = self._frames[frame]
            frames.append({
                "params":  copy.deepcopy(fr["params"]),
                "history": list(fr["history"]),
                "screens": {str(k): copy.deepcopy(v)
                            for k, v in sorted(fr["screens"].items())},
            })
        return {
            "frames":   frames,
            "selected": self._order.index(self._selected),
            "focused":  self._order.index(self._focused),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SessionHost":
        raw_frames = data.get("frames") if isinstance(data, dict) else None
        if not raw_frames:
            return cls()
        host = cls.__new__(cls)
        host._frames, host._order, host._next_id = {}, [], 1
        if not isinstance(raw_frames, list):
            raise ValueError("session frames must be a list")
        for idx, raw in enumerate(raw_frames):
            if not isinstance(raw, dict):
                raise ValueError(f"session frame {idx}: expected an object")
            raw_screens = raw.get("screens") or {}
            raw_history = raw.get("history") or []
            raw_params  = raw.get("params") or {}
            if (not isinstance(raw_screens, dict) or not isinstance(raw_history, list)
                    or not isinstance(raw_params, dict)):
                raise ValueError(f"session frame {idx}: bad params/screens/history")
            try:
                screens = {int(k): v for k, v in raw_screens.items()}
                ids     = [int(s) for s in raw_history]
            except (TypeError, ValueError):
                raise ValueError(f"session frame {idx}: screen ids must be integers") from None
            if not screens:
                screens = {0: copy.deepcopy(DEFAULT_LAYOUT)}
            history = [s for s in ids if s in screens]
            history += [s for s in sorted(screens) if s not in history]
            frame = host._next_id
            host._next_id += 1
            host._frames[frame] = {
                "params":  dict(raw_params),
                "screens": screens,
                "history": history,
            }
            host._order.append(frame)
        host._selected = host._order[_index(data.get("selected"), len(host._order))]
        host._focused  = host._order[_index(data.get("focused"), len(host._order))]
        return host

    @classmethod
    def load(cls, path: str) -> "SessionHost":
        if not os.path.exists(path):
            return cls()
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def save(self, path: str) -> None:
        atomic_write(path, json.dumps(self.to_dict(), indent=2, ensure_ascii=False))

    # ── internals ─────────────────────────────────────────────────────────
    def _frame(self, frame: int) -> Dict:
        try:
            return self._frames[frame]
        except KeyError:
            raise KeyError(f"No live frame {frame!r}") from None

    def _current(self) -> Dict:
        return self._frames[self._selected]


def _index(value, size: int) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value < size:
        return value
    return 0
