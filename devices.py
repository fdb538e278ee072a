"""
CHIP-8 Peripheral Layer
=======================
Host-side peripherals that sit outside the interpreter core:

  ToneGenerator   square-wave sample source gated by the sound timer
  KEYPAD_LAYOUT   physical arrangement of the 16-key hex keypad

Nothing here owns machine state; the system loop feeds these from
``Chip8`` once per frame.
"""

from __future__ import annotations

from itertools import islice
from typing import Iterator

import numpy as np

# ---------------------------------------------------------------------------
#  Keypad
# ---------------------------------------------------------------------------

# The COSMAC VIP keypad, row by row:
#   1 2 3 C
#   4 5 6 D
#   7 8 9 E
#   A 0 B F
KEYPAD_LAYOUT = (
    (0x1, 0x2, 0x3, 0xC),
    (0x4, 0x5, 0x6, 0xD),
    (0x7, 0x8, 0x9, 0xE),
    (0xA, 0x0, 0xB, 0xF),
)

# Host keyboard rows mapped position-for-position onto KEYPAD_LAYOUT.
QWERTY_ROWS = ("1234", "qwer", "asdf", "zxcv")


def qwerty_keymap() -> dict[str, int]:
    """Map host key characters to CHIP-8 key indices."""
    keymap = {}
    for host_row, pad_row in zip(QWERTY_ROWS, KEYPAD_LAYOUT):
        for ch, key in zip(host_row, pad_row):
            keymap[ch] = key
    return keymap


# ---------------------------------------------------------------------------
#  Audio
# ---------------------------------------------------------------------------

DEFAULT_SAMPLE_RATE = 44100
DEFAULT_TONE_FREQ   = 440
DEFAULT_VOLUME      = 3000


class ToneGenerator:
    """Square-wave tone driven by a running sample index.

    ``samples()`` is an infinite lazy stream; ``restart()`` rewinds it to
    the start of a period.  Samples are signed 16-bit: ``+volume`` on odd
    half-periods and ``-volume`` on even ones.
    """

    def __init__(self, sample_rate: int = DEFAULT_SAMPLE_RATE,
                 freq: int = DEFAULT_TONE_FREQ,
                 volume: int = DEFAULT_VOLUME):
        if freq <= 0 or sample_rate < 2 * freq:
            raise ValueError(f"Tone {freq} Hz cannot be sampled at "
                             f"{sample_rate} Hz")
        if not 0 <= volume <= 0x7FFF:
            raise ValueError(f"Volume {volume} out of int16 range")
        self.sample_rate = sample_rate
        self.freq = freq
        self.volume = volume
        self.period = sample_rate // freq
        self.half_period = self.period // 2
        self._index = 0

    def restart(self):
        self._index = 0

    def samples(self) -> Iterator[int]:
        while True:
            index = self._index
            self._index += 1
            yield self.sample_at(index)

    def sample_at(self, index: int) -> int:
        return self.volume if (index // self.half_period) % 2 else -self.volume

    def chunk(self, count: int) -> np.ndarray:
        """The next *count* samples as an int16 array."""
        return np.fromiter(islice(self.samples(), count), dtype=np.int16,
                           count=count)

    def loop_buffer(self, min_samples: int) -> np.ndarray:
        """A whole number of periods, at least *min_samples* long.

        Suitable for seamless looped playback.
        """
        periods = max(1, -(-min_samples // self.period))
        idx = np.arange(periods * self.period)
        out = np.where((idx // self.half_period) % 2 == 1,
                       self.volume, -self.volume)
        return out.astype(np.int16)
