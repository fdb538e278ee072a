"""
CHIP-8 System Emulator
======================
Wires together:
  - the Chip8 interpreter core (chip8.py)
  - a front end that presents the display, samples the keypad and gates
    the tone (display.py)
  - the frame scheduler that fixes the ordering between them

One frame (1/60 s by default) is: sample input, apply control signals,
run a fixed batch of instructions, tick the timers once, present the
display if it changed, then sleep out whatever is left of the frame.
"""

from __future__ import annotations

import random
import sys
import time
from dataclasses import dataclass
from typing import Optional

from chip8 import (
    Chip8, Chip8Error, StackError, RunState, StepOutcome, AudioGate,
    DISPLAY_WIDTH, DISPLAY_HEIGHT,
)
from devices import DEFAULT_SAMPLE_RATE, DEFAULT_TONE_FREQ, DEFAULT_VOLUME

FRAME_RATE = 60


# ---------------------------------------------------------------------------
#  Configuration
# ---------------------------------------------------------------------------

class ConfigError(ValueError):
    pass


@dataclass
class Chip8Config:
    window_width: int = DISPLAY_WIDTH
    window_height: int = DISPLAY_HEIGHT
    fg_color: int = 0xFFFFFFFF      # RGBA
    bg_color: int = 0x000000FF
    scale_factor: int = 20
    pixelated: bool = True
    instructions_per_second: int = 700
    square_wave_freq: int = DEFAULT_TONE_FREQ
    audio_sample_rate: int = DEFAULT_SAMPLE_RATE
    volume: int = DEFAULT_VOLUME
    frame_rate: int = FRAME_RATE
    seed: Optional[int] = None

    @property
    def instructions_per_frame(self) -> int:
        return self.instructions_per_second // self.frame_rate

    @property
    def frame_budget(self) -> float:
        """Wall-clock seconds per frame."""
        return 1.0 / self.frame_rate

    def validate(self):
        if not 0 < self.window_width <= DISPLAY_WIDTH:
            raise ConfigError(f"window_width must be 1..{DISPLAY_WIDTH}, "
                              f"got {self.window_width}")
        if not 0 < self.window_height <= DISPLAY_HEIGHT:
            raise ConfigError(f"window_height must be 1..{DISPLAY_HEIGHT}, "
                              f"got {self.window_height}")
        if self.frame_rate <= 0:
            raise ConfigError(f"frame_rate must be positive, got {self.frame_rate}")
        if self.instructions_per_second < self.frame_rate:
            raise ConfigError(
                f"instructions_per_second ({self.instructions_per_second}) "
                f"must be at least frame_rate ({self.frame_rate})")
        if self.scale_factor < 1:
            raise ConfigError(f"scale_factor must be >= 1, got {self.scale_factor}")
        for name in ("fg_color", "bg_color"):
            val = getattr(self, name)
            if not 0 <= val <= 0xFFFFFFFF:
                raise ConfigError(f"{name} must be a 32-bit RGBA value, got {val:#x}")
        if not 0 <= self.volume <= 0x7FFF:
            raise ConfigError(f"volume must be 0..32767, got {self.volume}")
        if self.square_wave_freq <= 0:
            raise ConfigError(f"square_wave_freq must be positive, "
                              f"got {self.square_wave_freq}")
        if self.audio_sample_rate < 2 * self.square_wave_freq:
            raise ConfigError(
                f"audio_sample_rate ({self.audio_sample_rate}) is below twice "
                f"the tone frequency ({self.square_wave_freq})")


# ---------------------------------------------------------------------------
#  Front end contract
# ---------------------------------------------------------------------------

class Frontend:
    """Presenter + input sampler + audio gate.  Methods default to no-ops."""

    def clear(self):
        """Paint the whole window in the background colour."""
        pass

    def present(self, display: list[bool]):
        """Show a 64x32 display buffer (row-major)."""
        pass

    def poll(self, system: "Chip8System"):
        """Deliver pending key transitions and control signals to *system*."""
        pass

    def set_audio(self, gate: AudioGate):
        pass


# ---------------------------------------------------------------------------
#  System
# ---------------------------------------------------------------------------

class Chip8System:
    """A Chip8 machine driven at a fixed frame rate."""

    def __init__(self, config: Optional[Chip8Config] = None,
                 frontend: Optional[Frontend] = None,
                 clock=time.perf_counter, sleep=time.sleep):
        self.config = config if config is not None else Chip8Config()
        self.config.validate()
        self.frontend = frontend if frontend is not None else Frontend()
        self.cpu = Chip8(self.config.window_width, self.config.window_height,
                         rng=random.Random(self.config.seed))
        self.clock = clock
        self.sleep = sleep

        self.frame_count: int = 0
        self.overruns: int = 0
        self.fatal: Optional[Chip8Error] = None
        self._reset_requested = False
        self._quit_requested = False

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load(self, image: bytes | bytearray):
        self.cpu.load(image)
        self.fatal = None
        self.frontend.clear()

    def load_file(self, path: str):
        self.cpu.load_file(path)
        self.fatal = None
        self.frontend.clear()

    # -----------------------------------------------------------------
    #  Input and control signals (called by the front end)
    # -----------------------------------------------------------------

    def key_down(self, key: int):
        self.cpu.set_key(key, True)

    def key_up(self, key: int):
        self.cpu.set_key(key, False)

    def toggle_pause(self):
        if self.cpu.state is RunState.RUNNING:
            self.cpu.state = RunState.PAUSED
            print("[chip8] ====== PAUSED ======")
        elif self.cpu.state is RunState.PAUSED:
            self.cpu.state = RunState.RUNNING
            print("[chip8] resumed")

    def request_reset(self):
        self._reset_requested = True

    def reset(self):
        """Reload the current image now and repaint the background."""
        self.cpu.reset()
        self.fatal = None
        self.frontend.clear()
        print("[chip8] reset")

    def request_quit(self):
        self._quit_requested = True

    @property
    def halted(self) -> bool:
        return self.cpu.state is RunState.HALTED

    @property
    def paused(self) -> bool:
        return self.cpu.state is RunState.PAUSED

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def run_frame(self) -> bool:
        """Run one frame.  Returns False once the machine has halted."""
        self.frontend.poll(self)

        if self._quit_requested:
            self._quit_requested = False
            self.cpu.state = RunState.HALTED
            self.frontend.set_audio(AudioGate.OFF)
            return False

        if self._reset_requested:
            self._reset_requested = False
            self.reset()

        if self.halted:
            return False
        if self.paused:
            return True

        try:
            for _ in range(self.config.instructions_per_frame):
                if self.cpu.step() & StepOutcome.BLOCKED:
                    # Keypad only changes between frames
                    break
        except StackError as e:
            self.fatal = e
            self.frontend.set_audio(AudioGate.OFF)
            print(f"[chip8] fatal: {e}", file=sys.stderr)
            return False

        self.frontend.set_audio(self.cpu.tick_timers())

        if self.cpu.draw:
            self.frontend.present(self.cpu.display)
            self.cpu.draw = False

        self.frame_count += 1
        return True

    def run(self, max_frames: Optional[int] = None) -> int:
        """Run frames in real time until halt/quit or *max_frames*.

        Returns the number of frames started.
        """
        budget = self.config.frame_budget
        frames = 0
        while max_frames is None or frames < max_frames:
            start = self.clock()
            frames += 1
            if not self.run_frame():
                break
            remaining = budget - (self.clock() - start)
            if remaining > 0:
                self.sleep(remaining)
            else:
                self.overruns += 1
        return frames

    def run_until_halt(self, max_steps: int = 1_000_000) -> int:
        """Step without frame pacing or timers.  Returns steps executed."""
        return self.cpu.run(max_steps)

    # -----------------------------------------------------------------
    #  Introspection
    # -----------------------------------------------------------------

    def dump_state(self) -> str:
        lines = [
            "=== CHIP-8 System ===",
            self.cpu.dump_regs(),
            "  Stack: " + (" ".join(f"{a:#05x}" for a in
                                    self.cpu.stack[:self.cpu.sp]) or "(empty)"),
            f"  Frames: {self.frame_count}  Overruns: {self.overruns}  "
            f"Steps: {self.cpu.cycle_count}",
            f"  Rate: {self.config.instructions_per_second} ips "
            f"({self.config.instructions_per_frame}/frame @ "
            f"{self.config.frame_rate} Hz)",
        ]
        if self.fatal is not None:
            lines.append(f"  Fatal: {self.fatal}")
        return "\n".join(lines)
