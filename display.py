"""
CHIP-8 Display / Input / Audio Front End
========================================
Presents the 64x32 display buffer in a pygame window, samples the host
keyboard into the 16-key keypad, and plays a square-wave tone while the
sound timer is running.

    Keypad      QWERTY
    1 2 3 C     1 2 3 4
    4 5 6 D     q w e r
    7 8 9 E     a s d f
    A 0 B F     z x c v

    ESC / close  quit
    SPACE        pause / resume
    =            soft reset (reload the same ROM)

Usage (programmatic):
    from display import PygameFrontend
    fe = PygameFrontend(config)
    fe.open()
    sys_emu = Chip8System(config, frontend=fe)
    sys_emu.load_file("pong.ch8")
    sys_emu.run()
    fe.close()

``HeadlessDisplay`` implements the same contract without pygame and
records everything it is handed, for tests and ``--headless`` runs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import numpy as np

from chip8 import AudioGate, DISPLAY_WIDTH, DISPLAY_HEIGHT
from devices import ToneGenerator, qwerty_keymap
from system import Frontend

if TYPE_CHECKING:
    from system import Chip8System, Chip8Config

AUDIO_BUFFER = 512      # mixer buffer size in samples
TONE_SECONDS = 1        # length of the looped tone buffer


# ── Rendering helpers ─────────────────────────────────────────────────


def rgba_to_rgb(color: int) -> tuple[int, int, int]:
    """Split a 0xRRGGBBAA colour into an (R, G, B) tuple."""
    return ((color >> 24) & 0xFF, (color >> 16) & 0xFF, (color >> 8) & 0xFF)


def display_grid(display, width: int = DISPLAY_WIDTH,
                 height: int = DISPLAY_HEIGHT) -> np.ndarray:
    """Display buffer as a (width, height) bool array, x-major like surfarray."""
    grid = np.asarray(display, dtype=bool).reshape(DISPLAY_HEIGHT,
                                                   DISPLAY_WIDTH)
    return grid[:height, :width].T


def display_to_rgb(display, fg: int, bg: int, width: int = DISPLAY_WIDTH,
                   height: int = DISPLAY_HEIGHT) -> np.ndarray:
    """Colour a display buffer into a (width, height, 3) uint8 array."""
    grid = display_grid(display, width, height)
    pixels = np.empty((width, height, 3), dtype=np.uint8)
    pixels[:, :] = rgba_to_rgb(bg)
    pixels[grid] = rgba_to_rgb(fg)
    return pixels


def render_ascii(display, width: int = DISPLAY_WIDTH,
                 height: int = DISPLAY_HEIGHT, on: str = "#",
                 off: str = ".") -> str:
    """Text rendering of the display, one line per row."""
    grid = display_grid(display, width, height)
    return "\n".join(
        "".join(on if grid[x, y] else off for x in range(width))
        for y in range(height)
    )


# ── pygame front end ──────────────────────────────────────────────────


class PygameFrontend(Frontend):
    """Window, keyboard and tone output backed by pygame."""

    def __init__(self, config: "Chip8Config", title: str = "CHIP-8 Emulator"):
        self.config = config
        self.title = title
        self.width = config.window_width
        self.height = config.window_height
        self.scale = max(1, config.scale_factor)
        self.audio_enabled = True

        self._screen = None
        self._surface = None
        self._sound = None
        self._playing = False
        self._keymap: dict[int, int] = {}

    # -- lifecycle ---------------------------------------------------------

    def open(self):
        import pygame

        pygame.init()
        pygame.display.set_caption(self.title)
        self._screen = pygame.display.set_mode(
            (self.width * self.scale, self.height * self.scale))
        self._surface = pygame.Surface((self.width, self.height))
        self._keymap = {getattr(pygame, f"K_{ch}"): key
                        for ch, key in qwerty_keymap().items()}
        if self.audio_enabled:
            self._open_audio()
        self.clear()

    def _open_audio(self):
        import pygame

        try:
            pygame.mixer.init(frequency=self.config.audio_sample_rate,
                              size=-16, channels=1, buffer=AUDIO_BUFFER)
        except pygame.error as e:
            print(f"[audio] mixer unavailable, running silent: {e}")
            self.audio_enabled = False
            return

        freq, _fmt, channels = pygame.mixer.get_init()
        tone = ToneGenerator(sample_rate=freq,
                             freq=self.config.square_wave_freq,
                             volume=self.config.volume)
        buf = tone.loop_buffer(freq * TONE_SECONDS)
        if channels > 1:
            buf = np.ascontiguousarray(np.repeat(buf[:, None], channels, axis=1))
        self._sound = pygame.sndarray.make_sound(buf)

    def close(self):
        import pygame

        if self._sound is not None:
            self._sound.stop()
            self._sound = None
        self._playing = False
        if pygame.mixer.get_init():
            pygame.mixer.quit()
        pygame.quit()
        self._screen = None

    # -- Frontend contract -------------------------------------------------

    def clear(self):
        import pygame

        if self._screen is None:
            return
        self._screen.fill(rgba_to_rgb(self.config.bg_color))
        pygame.display.flip()

    def present(self, display: list[bool]):
        import pygame

        if self._screen is None:
            return
        s = self.scale
        rgb = display_to_rgb(display, self.config.fg_color,
                             self.config.bg_color, self.width, self.height)
        pygame.surfarray.blit_array(self._surface, rgb)
        scaled = pygame.transform.scale(self._surface,
                                        (self.width * s, self.height * s))
        self._screen.blit(scaled, (0, 0))

        if self.config.pixelated and s > 1:
            bg = rgba_to_rgb(self.config.bg_color)
            grid = display_grid(display, self.width, self.height)
            for x, y in np.argwhere(grid):
                pygame.draw.rect(self._screen, bg,
                                 (int(x) * s, int(y) * s, s, s), 1)

        pygame.display.flip()

    def poll(self, system: "Chip8System"):
        import pygame

        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                system.request_quit()
            elif event.type == pygame.KEYDOWN:
                if event.key == pygame.K_ESCAPE:
                    system.request_quit()
                elif event.key == pygame.K_SPACE:
                    system.toggle_pause()
                elif event.key == pygame.K_EQUALS:
                    system.request_reset()
                elif event.key in self._keymap:
                    system.key_down(self._keymap[event.key])
            elif event.type == pygame.KEYUP:
                if event.key in self._keymap:
                    system.key_up(self._keymap[event.key])

    def set_audio(self, gate: AudioGate):
        if self._sound is None:
            return
        if gate is AudioGate.ON and not self._playing:
            self._sound.play(loops=-1)
            self._playing = True
        elif gate is AudioGate.OFF and self._playing:
            self._sound.stop()
            self._playing = False


# ── Headless front end ────────────────────────────────────────────────


class HeadlessDisplay(Frontend):
    """No-window front end that records presented frames and audio gates.

    With ``keep_frames=False`` only counters and ``last_gate`` are kept.

    *script* maps a poll number (0 = first frame) to a list of actions:
    ``("down", key)``, ``("up", key)``, ``("pause", None)``,
    ``("reset", None)`` or ``("quit", None)``.
    """

    def __init__(self, script: Optional[dict[int, list[tuple]]] = None,
                 keep_frames: bool = True):
        self.script = script or {}
        self.keep_frames = keep_frames
        self.frames: list[list[bool]] = []
        self.gates: list[AudioGate] = []
        self.last_gate: Optional[AudioGate] = None
        self.clears = 0
        self.presents = 0
        self.polls = 0

    def clear(self):
        self.clears += 1

    def present(self, display: list[bool]):
        self.presents += 1
        if self.keep_frames:
            self.frames.append(list(display))

    def poll(self, system: "Chip8System"):
        for action, arg in self.script.get(self.polls, ()):
            if action == "down":
                system.key_down(arg)
            elif action == "up":
                system.key_up(arg)
            elif action == "pause":
                system.toggle_pause()
            elif action == "reset":
                system.request_reset()
            elif action == "quit":
                system.request_quit()
            else:
                raise ValueError(f"Unknown scripted action: {action!r}")
        self.polls += 1

    def set_audio(self, gate: AudioGate):
        self.last_gate = gate
        if self.keep_frames:
            self.gates.append(gate)

    def snapshot(self, width: int = DISPLAY_WIDTH,
                 height: int = DISPLAY_HEIGHT) -> Optional[str]:
        """ASCII rendering of the last presented frame."""
        if not self.frames:
            return None
        return render_ascii(self.frames[-1], width, height)
