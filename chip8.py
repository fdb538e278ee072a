"""
CHIP-8 Interpreter Core
=======================
A step-level interpreter for the CHIP-8 virtual machine: 4 KiB of memory,
sixteen 8-bit V registers, a 16-bit index register, a 12-slot call stack,
two 60 Hz timers and a 64x32 monochrome display.

Every opcode is fetched big-endian from memory at PC, decoded once into an
``Instruction`` (sub-fields plus an opcode class tag) and dispatched on that
tag.  The two multi-way families (8XYn ALU and FXnn misc) carry a nested
sub-operation tag so the executor never re-decodes a secondary field.
"""

from __future__ import annotations

import enum
import random
from dataclasses import dataclass
from typing import Callable, Optional

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE      = 4096
ADDR_MASK     = 0xFFF
ENTRY_POINT   = 0x200
MAX_IMAGE     = MEM_SIZE - ENTRY_POINT   # 3584 bytes

NUM_REGS      = 16
REG_VF        = 0xF        # flag register
STACK_DEPTH   = 12
NUM_KEYS      = 16

DISPLAY_WIDTH  = 64
DISPLAY_HEIGHT = 32
DISPLAY_SIZE   = DISPLAY_WIDTH * DISPLAY_HEIGHT

FONT_BASE     = 0x000
GLYPH_HEIGHT  = 5

# Hex digit glyphs 0-F, 4x5 pixels each (high nibble of each byte).
FONT = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])


# ---------------------------------------------------------------------------
#  Enumerations
# ---------------------------------------------------------------------------

class RunState(enum.Enum):
    RUNNING = "running"
    PAUSED  = "paused"
    HALTED  = "halted"


class StepOutcome(enum.Flag):
    """What a single ``step`` asks of the scheduler."""
    NONE    = 0
    REDRAW  = enum.auto()   # display buffer changed
    BLOCKED = enum.auto()   # FX0A is waiting for a key


class AudioGate(enum.Enum):
    OFF = 0
    ON  = 1


class Op(enum.Enum):
    """Opcode classes.  Handler for each is ``Chip8._exec_<name>``."""
    CLS     = enum.auto()   # 00E0
    RET     = enum.auto()   # 00EE
    JP      = enum.auto()   # 1NNN
    CALL    = enum.auto()   # 2NNN
    SE_IMM  = enum.auto()   # 3XNN
    SNE_IMM = enum.auto()   # 4XNN
    SE_REG  = enum.auto()   # 5XY0
    LD_IMM  = enum.auto()   # 6XNN
    ADD_IMM = enum.auto()   # 7XNN
    ALU     = enum.auto()   # 8XYn
    SNE_REG = enum.auto()   # 9XY0
    LD_I    = enum.auto()   # ANNN
    JP_V0   = enum.auto()   # BNNN
    RND     = enum.auto()   # CXNN
    DRW     = enum.auto()   # DXYN
    SKP     = enum.auto()   # EX9E
    SKNP    = enum.auto()   # EXA1
    MISC    = enum.auto()   # FXnn
    UNKNOWN = enum.auto()


class AluOp(enum.IntEnum):
    """8XYn sub-operations, valued by the low nibble."""
    MOV  = 0x0
    OR   = 0x1
    AND  = 0x2
    XOR  = 0x3
    ADD  = 0x4
    SUB  = 0x5
    SHR  = 0x6
    SUBN = 0x7
    SHL  = 0xE


class MiscOp(enum.IntEnum):
    """FXnn sub-operations, valued by the low byte."""
    LD_VX_DT = 0x07
    LD_KEY   = 0x0A
    LD_DT_VX = 0x15
    LD_ST_VX = 0x18
    ADD_I    = 0x1E
    LD_FONT  = 0x29
    BCD      = 0x33
    STORE    = 0x55
    LOAD     = 0x65


_ALU_OPS = {op.value: op for op in AluOp}
_MISC_OPS = {op.value: op for op in MiscOp}

_SIMPLE_FAMILIES = {
    0x1: Op.JP, 0x2: Op.CALL, 0x3: Op.SE_IMM, 0x4: Op.SNE_IMM,
    0x6: Op.LD_IMM, 0x7: Op.ADD_IMM, 0xA: Op.LD_I, 0xB: Op.JP_V0,
    0xC: Op.RND, 0xD: Op.DRW,
}


# ---------------------------------------------------------------------------
#  Decoder
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Instruction:
    """One decoded opcode.  ``alu``/``misc`` are set only for those groups."""
    opcode: int
    nnn: int
    nn: int
    n: int
    x: int
    y: int
    op: Op
    alu: Optional[AluOp] = None
    misc: Optional[MiscOp] = None


def decode(opcode: int) -> Instruction:
    """Split *opcode* into its fields and classify it.  Never fails."""
    opcode &= 0xFFFF
    family = (opcode >> 12) & 0xF
    nnn = opcode & 0x0FFF
    nn = opcode & 0x00FF
    n = opcode & 0x000F
    x = (opcode >> 8) & 0xF
    y = (opcode >> 4) & 0xF

    alu = None
    misc = None
    if family in _SIMPLE_FAMILIES:
        op = _SIMPLE_FAMILIES[family]
    elif family == 0x0:
        if opcode == 0x00E0:
            op = Op.CLS
        elif opcode == 0x00EE:
            op = Op.RET
        else:
            op = Op.UNKNOWN     # 0NNN machine-code call is not emulated
    elif family == 0x5:
        op = Op.SE_REG if n == 0 else Op.UNKNOWN
    elif family == 0x9:
        op = Op.SNE_REG if n == 0 else Op.UNKNOWN
    elif family == 0x8:
        alu = _ALU_OPS.get(n)
        op = Op.ALU if alu is not None else Op.UNKNOWN
    elif family == 0xE:
        if nn == 0x9E:
            op = Op.SKP
        elif nn == 0xA1:
            op = Op.SKNP
        else:
            op = Op.UNKNOWN
    else:  # 0xF
        misc = _MISC_OPS.get(nn)
        op = Op.MISC if misc is not None else Op.UNKNOWN

    return Instruction(opcode, nnn, nn, n, x, y, op, alu, misc)


# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class Chip8Error(Exception):
    """Base for interpreter errors."""
    pass

class LoadError(Chip8Error):
    pass

class ImageTooLarge(LoadError):
    def __init__(self, size: int, max_size: int = MAX_IMAGE):
        self.size = size
        self.max_size = max_size
        super().__init__(f"Image too big: {size} bytes (max {max_size})")

class ImageUnreadable(LoadError):
    def __init__(self, path: str, reason: str = ""):
        self.path = path
        super().__init__(f"Cannot read image '{path}'" +
                         (f": {reason}" if reason else ""))

class StackError(Chip8Error):
    """Fatal call-stack misuse.  The machine is halted when raised."""
    def __init__(self, addr: int, message: str):
        self.addr = addr
        super().__init__(f"{message} @ {addr:#05x}")

class StackOverflowError(StackError):
    pass

class StackUnderflowError(StackError):
    pass

class HaltError(Chip8Error):
    pass


# ---------------------------------------------------------------------------
#  Machine
# ---------------------------------------------------------------------------

class Chip8:
    """Complete CHIP-8 machine state plus its fetch/decode/execute step.

    ``width``/``height`` set the logical grid used for sprite coordinate
    wrapping and clipping; the display buffer itself is always 64x32.
    """

    def __init__(self, width: int = DISPLAY_WIDTH,
                 height: int = DISPLAY_HEIGHT,
                 rng: Optional[random.Random] = None):
        if not (0 < width <= DISPLAY_WIDTH and 0 < height <= DISPLAY_HEIGHT):
            raise ValueError(f"Logical grid {width}x{height} does not fit "
                             f"the {DISPLAY_WIDTH}x{DISPLAY_HEIGHT} display")
        self.width = width
        self.height = height
        self.rng = rng if rng is not None else random.Random()

        self.memory = bytearray(MEM_SIZE)
        self.display: list[bool] = [False] * DISPLAY_SIZE
        self.v = bytearray(NUM_REGS)
        self.i: int = 0
        self.pc: int = ENTRY_POINT
        self.stack: list[int] = [0] * STACK_DEPTH
        self.sp: int = 0
        self.delay_timer: int = 0
        self.sound_timer: int = 0
        self.keypad: list[bool] = [False] * NUM_KEYS
        self.state = RunState.HALTED   # nothing loaded yet
        self.draw: bool = False
        self.cycle_count: int = 0

        self.image: bytes = b""
        # (address, instruction) of an FX0A waiting for a key
        self._blocked: Optional[tuple[int, Instruction]] = None

        # Called with (addr, Instruction) before each execute
        self.on_step: Optional[Callable[[int, Instruction], None]] = None

        self._handlers = {op: getattr(self, f"_exec_{op.name.lower()}")
                          for op in Op}

    # -- Loading --

    def load(self, image: bytes | bytearray):
        """Reset the machine and place *image* at the entry point."""
        if len(image) > MAX_IMAGE:
            raise ImageTooLarge(len(image))
        self.image = bytes(image)
        self._reset_state()
        self.memory[FONT_BASE:FONT_BASE + len(FONT)] = FONT
        self.memory[ENTRY_POINT:ENTRY_POINT + len(self.image)] = self.image
        self.state = RunState.RUNNING

    def load_file(self, path: str):
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise ImageUnreadable(path, e.strerror or str(e)) from e
        self.load(data)

    def reset(self):
        """Soft reset: reload the current image from scratch."""
        self.load(self.image)

    def _reset_state(self):
        self.memory[:] = bytes(MEM_SIZE)
        self.display[:] = [False] * DISPLAY_SIZE
        self.v[:] = bytes(NUM_REGS)
        self.i = 0
        self.pc = ENTRY_POINT
        self.stack[:] = [0] * STACK_DEPTH
        self.sp = 0
        self.delay_timer = 0
        self.sound_timer = 0
        self.keypad[:] = [False] * NUM_KEYS
        self.draw = False
        self.cycle_count = 0
        self._blocked = None

    # -- Memory access --

    def mem_read8(self, addr: int) -> int:
        return self.memory[addr & ADDR_MASK]

    def mem_write8(self, addr: int, val: int):
        self.memory[addr & ADDR_MASK] = val & 0xFF

    def peek16(self, addr: int) -> int:
        return (self.mem_read8(addr) << 8) | self.mem_read8(addr + 1)

    def fetch16(self) -> int:
        """Fetch the big-endian opcode at PC and advance PC."""
        opcode = self.peek16(self.pc)
        self.pc = (self.pc + 2) & ADDR_MASK
        return opcode

    # -- Stack helpers --

    def push(self, addr: int):
        if self.sp >= STACK_DEPTH:
            self.state = RunState.HALTED
            raise StackOverflowError(self.pc, "Call stack overflow")
        self.stack[self.sp] = addr & ADDR_MASK
        self.sp += 1

    def pop(self) -> int:
        if self.sp == 0:
            self.state = RunState.HALTED
            raise StackUnderflowError(self.pc, "Return with empty stack")
        self.sp -= 1
        return self.stack[self.sp]

    # -- Keypad --

    def set_key(self, key: int, down: bool):
        self.keypad[key & 0xF] = down

    # -- Execution --

    def step(self) -> StepOutcome:
        """Execute one instruction and report what the scheduler must do."""
        if self.state is RunState.HALTED:
            raise HaltError("Machine is halted")
        if self.state is RunState.PAUSED:
            return StepOutcome.NONE

        addr = self.pc
        inst = None
        if self._blocked is not None:
            blocked_addr, cached = self._blocked
            self._blocked = None
            # Stale once PC moved or the opcode under it was rewritten
            if blocked_addr == addr and self.peek16(addr) == cached.opcode:
                inst = cached
                self.pc = (addr + 2) & ADDR_MASK
        if inst is None:
            inst = decode(self.fetch16())

        if self.on_step is not None:
            self.on_step(addr, inst)

        outcome = self._handlers[inst.op](inst)
        if outcome is StepOutcome.BLOCKED:
            self._blocked = (addr, inst)
            self.pc = addr
        self.cycle_count += 1
        return outcome

    def run(self, max_steps: int = 1_000_000) -> int:
        """Step until halted, blocked on a key, or *max_steps*.  Returns steps."""
        count = 0
        while count < max_steps and self.state is RunState.RUNNING:
            outcome = self.step()
            count += 1
            if outcome & StepOutcome.BLOCKED:
                break
        return count

    def tick_timers(self) -> AudioGate:
        """One 60 Hz timer tick."""
        if self.delay_timer > 0:
            self.delay_timer -= 1
        if self.sound_timer > 0:
            self.sound_timer -= 1
        return AudioGate.ON if self.sound_timer > 0 else AudioGate.OFF

    # =====================================================================
    #  Opcode handlers
    # =====================================================================

    def _exec_cls(self, inst: Instruction) -> StepOutcome:
        self.display[:] = [False] * DISPLAY_SIZE
        self.draw = True
        return StepOutcome.REDRAW

    def _exec_ret(self, inst: Instruction) -> StepOutcome:
        self.pc = self.pop()
        return StepOutcome.NONE

    def _exec_jp(self, inst: Instruction) -> StepOutcome:
        self.pc = inst.nnn
        return StepOutcome.NONE

    def _exec_call(self, inst: Instruction) -> StepOutcome:
        self.push(self.pc)
        self.pc = inst.nnn
        return StepOutcome.NONE

    def _skip_if(self, cond: bool) -> StepOutcome:
        if cond:
            self.pc = (self.pc + 2) & ADDR_MASK
        return StepOutcome.NONE

    def _exec_se_imm(self, inst: Instruction) -> StepOutcome:
        return self._skip_if(self.v[inst.x] == inst.nn)

    def _exec_sne_imm(self, inst: Instruction) -> StepOutcome:
        return self._skip_if(self.v[inst.x] != inst.nn)

    def _exec_se_reg(self, inst: Instruction) -> StepOutcome:
        return self._skip_if(self.v[inst.x] == self.v[inst.y])

    def _exec_sne_reg(self, inst: Instruction) -> StepOutcome:
        return self._skip_if(self.v[inst.x] != self.v[inst.y])

    def _exec_ld_imm(self, inst: Instruction) -> StepOutcome:
        self.v[inst.x] = inst.nn
        return StepOutcome.NONE

    def _exec_add_imm(self, inst: Instruction) -> StepOutcome:
        self.v[inst.x] = (self.v[inst.x] + inst.nn) & 0xFF
        return StepOutcome.NONE

    def _exec_alu(self, inst: Instruction) -> StepOutcome:
        a = self.v[inst.x]
        b = self.v[inst.y]
        flag = None
        sub = inst.alu

        if sub is AluOp.MOV:
            r = b
        elif sub is AluOp.OR:
            r = a | b
        elif sub is AluOp.AND:
            r = a & b
        elif sub is AluOp.XOR:
            r = a ^ b
        elif sub is AluOp.ADD:
            r = a + b
            flag = 1 if r > 0xFF else 0
        elif sub is AluOp.SUB:
            r = a - b
            flag = 1 if a >= b else 0
        elif sub is AluOp.SHR:
            r = a >> 1
            flag = a & 1
        elif sub is AluOp.SUBN:
            r = b - a
            flag = 1 if b >= a else 0
        else:  # SHL
            r = a << 1
            flag = (a >> 7) & 1

        self.v[inst.x] = r & 0xFF
        # VF last: when X is VF the flag overwrites the result
        if flag is not None:
            self.v[REG_VF] = flag
        return StepOutcome.NONE

    def _exec_ld_i(self, inst: Instruction) -> StepOutcome:
        self.i = inst.nnn
        return StepOutcome.NONE

    def _exec_jp_v0(self, inst: Instruction) -> StepOutcome:
        self.pc = (self.v[0] + inst.nnn) & ADDR_MASK
        return StepOutcome.NONE

    def _exec_rnd(self, inst: Instruction) -> StepOutcome:
        self.v[inst.x] = self.rng.randrange(256) & inst.nn
        return StepOutcome.NONE

    def _exec_drw(self, inst: Instruction) -> StepOutcome:
        x0 = self.v[inst.x] % self.width
        y = self.v[inst.y] % self.height
        self.v[REG_VF] = 0

        for row in range(inst.n):
            if y >= self.height:
                break
            sprite = self.mem_read8(self.i + row)
            base = y * DISPLAY_WIDTH
            x = x0
            for bit in range(8):
                if x >= self.width:
                    break
                if sprite & (0x80 >> bit):
                    idx = base + x
                    if self.display[idx]:
                        self.v[REG_VF] = 1
                    self.display[idx] = not self.display[idx]
                x += 1
            y += 1

        self.draw = True
        return StepOutcome.REDRAW

    def _exec_skp(self, inst: Instruction) -> StepOutcome:
        return self._skip_if(self.keypad[self.v[inst.x] & 0xF])

    def _exec_sknp(self, inst: Instruction) -> StepOutcome:
        return self._skip_if(not self.keypad[self.v[inst.x] & 0xF])

    def _exec_misc(self, inst: Instruction) -> StepOutcome:
        sub = inst.misc
        x = inst.x

        if sub is MiscOp.LD_VX_DT:
            self.v[x] = self.delay_timer
        elif sub is MiscOp.LD_KEY:
            for key, down in enumerate(self.keypad):
                if down:
                    self.v[x] = key
                    break
            else:
                return StepOutcome.BLOCKED
        elif sub is MiscOp.LD_DT_VX:
            self.delay_timer = self.v[x]
        elif sub is MiscOp.LD_ST_VX:
            self.sound_timer = self.v[x]
        elif sub is MiscOp.ADD_I:
            self.i = (self.i + self.v[x]) & 0xFFFF
        elif sub is MiscOp.LD_FONT:
            self.i = FONT_BASE + self.v[x] * GLYPH_HEIGHT
        elif sub is MiscOp.BCD:
            val = self.v[x]
            self.mem_write8(self.i, val // 100)
            self.mem_write8(self.i + 1, (val // 10) % 10)
            self.mem_write8(self.i + 2, val % 10)
        elif sub is MiscOp.STORE:
            for r in range(x + 1):
                self.mem_write8(self.i + r, self.v[r])
        else:  # LOAD
            for r in range(x + 1):
                self.v[r] = self.mem_read8(self.i + r)
        return StepOutcome.NONE

    def _exec_unknown(self, inst: Instruction) -> StepOutcome:
        return StepOutcome.NONE

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(
                f"V{r:X}={self.v[r]:#04x}" for r in range(row, row + 4)))
        lines.append(f"  I={self.i:#06x}  PC={self.pc:#05x}  SP={self.sp}  "
                     f"DT={self.delay_timer}  ST={self.sound_timer}  "
                     f"state={self.state.value}")
        return "\n".join(lines)
