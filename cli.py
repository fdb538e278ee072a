#!/usr/bin/env python3
"""
CHIP-8 Emulator / Monitor CLI
=============================
Runs a CHIP-8 ROM in a pygame window, headless, or under an interactive
debug monitor.

Provides:
  - Window / colour / audio / speed configuration
  - ROM disassembly listing
  - Per-instruction trace output
  - Step / run / breakpoint execution with register and memory inspection

Usage:
  python cli.py ROM [--scale N] [--ips N] [--fg RRGGBBAA] [--bg RRGGBBAA]
                    [--no-pixelated] [--trace] [--monitor] [--disasm]
                    [--headless --frames N]
"""

from __future__ import annotations
import argparse
import cmd
import shlex
import sys

from chip8 import (
    Instruction, Op, AluOp, MiscOp, LoadError, HaltError, StackError,
    RunState, StepOutcome, decode, ENTRY_POINT, MEM_SIZE, STACK_DEPTH,
)
from system import Chip8System, Chip8Config, ConfigError
from display import HeadlessDisplay, render_ascii

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

ALU_NAMES = {
    AluOp.MOV: "LD", AluOp.OR: "OR", AluOp.AND: "AND", AluOp.XOR: "XOR",
    AluOp.ADD: "ADD", AluOp.SUB: "SUB", AluOp.SHR: "SHR",
    AluOp.SUBN: "SUBN", AluOp.SHL: "SHL",
}

MISC_FORMATS = {
    MiscOp.LD_VX_DT: "LD V{x:X}, DT",
    MiscOp.LD_KEY:   "LD V{x:X}, K",
    MiscOp.LD_DT_VX: "LD DT, V{x:X}",
    MiscOp.LD_ST_VX: "LD ST, V{x:X}",
    MiscOp.ADD_I:    "ADD I, V{x:X}",
    MiscOp.LD_FONT:  "LD F, V{x:X}",
    MiscOp.BCD:      "LD B, V{x:X}",
    MiscOp.STORE:    "LD [I], V{x:X}",
    MiscOp.LOAD:     "LD V{x:X}, [I]",
}


def disasm_inst(inst: Instruction) -> str:
    """Mnemonic text for one decoded instruction."""
    x, y = inst.x, inst.y
    op = inst.op

    if op is Op.CLS:      return "CLS"
    if op is Op.RET:      return "RET"
    if op is Op.JP:       return f"JP {inst.nnn:#05x}"
    if op is Op.CALL:     return f"CALL {inst.nnn:#05x}"
    if op is Op.SE_IMM:   return f"SE V{x:X}, {inst.nn:#04x}"
    if op is Op.SNE_IMM:  return f"SNE V{x:X}, {inst.nn:#04x}"
    if op is Op.SE_REG:   return f"SE V{x:X}, V{y:X}"
    if op is Op.SNE_REG:  return f"SNE V{x:X}, V{y:X}"
    if op is Op.LD_IMM:   return f"LD V{x:X}, {inst.nn:#04x}"
    if op is Op.ADD_IMM:  return f"ADD V{x:X}, {inst.nn:#04x}"
    if op is Op.LD_I:     return f"LD I, {inst.nnn:#05x}"
    if op is Op.JP_V0:    return f"JP V0, {inst.nnn:#05x}"
    if op is Op.RND:      return f"RND V{x:X}, {inst.nn:#04x}"
    if op is Op.DRW:      return f"DRW V{x:X}, V{y:X}, {inst.n}"
    if op is Op.SKP:      return f"SKP V{x:X}"
    if op is Op.SKNP:     return f"SKNP V{x:X}"
    if op is Op.ALU:
        name = ALU_NAMES[inst.alu]
        if inst.alu in (AluOp.SHR, AluOp.SHL):
            return f"{name} V{x:X}"
        return f"{name} V{x:X}, V{y:X}"
    if op is Op.MISC:
        return MISC_FORMATS[inst.misc].format(x=x)
    return f"DW {inst.opcode:#06x}"


def disasm_one(mem: bytearray | bytes, addr: int) -> tuple[str, int]:
    """Disassemble the opcode at `addr`. Returns (text, byte_count)."""
    size = len(mem)
    opcode = (mem[addr % size] << 8) | mem[(addr + 1) % size]
    return disasm_inst(decode(opcode)), 2


def disasm_image(image: bytes, base: int = ENTRY_POINT) -> list[str]:
    """Listing lines for a whole ROM image loaded at *base*."""
    lines = []
    for off in range(0, len(image) - 1, 2):
        opcode = (image[off] << 8) | image[off + 1]
        lines.append(f"  {base + off:#05x}: {opcode:04X}  "
                     f"{disasm_inst(decode(opcode))}")
    if len(image) % 2:
        lines.append(f"  {base + len(image) - 1:#05x}: {image[-1]:02X}    "
                     f"DB {image[-1]:#04x}")
    return lines


def trace_step(addr: int, inst: Instruction):
    print(f"  {addr:#05x}: {inst.opcode:04X}  {disasm_inst(inst)}")


# ---------------------------------------------------------------------------
#  Debug monitor
# ---------------------------------------------------------------------------

class Chip8Monitor(cmd.Cmd):
    """Interactive monitor for a loaded CHIP-8 system."""

    intro = (
        "\n"
        "╔══════════════════════════════════════════════════════════╗\n"
        "║          CHIP-8 Monitor                                  ║\n"
        "║   Type 'help' for commands.  'quit' to exit.             ║\n"
        "╚══════════════════════════════════════════════════════════╝\n"
    )
    prompt = "CHIP8> "

    def __init__(self, system: Chip8System, **kwargs):
        super().__init__(**kwargs)
        self.sys = system
        self.breakpoints: set[int] = set()

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (hex with 0x prefix, decimal, pc or i)."""
        s = s.strip().lower()
        if s == "pc":
            return self.sys.cpu.pc
        if s == "i":
            return self.sys.cpu.i
        return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except ValueError as e:
            print(f"Error: {e}")
            return False

    # ================================================================
    #  Commands
    # ================================================================

    # -- Execution --

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        cpu = self.sys.cpu
        for _ in range(count):
            if cpu.state is RunState.HALTED:
                print("Machine is halted.")
                break
            addr = cpu.pc
            text, _ = disasm_one(cpu.memory, addr)
            try:
                outcome = cpu.step()
            except StackError as e:
                print(f"Fatal: {e}")
                break
            suffix = ""
            if outcome & StepOutcome.BLOCKED:
                suffix = "  (waiting for key)"
            elif outcome & StepOutcome.REDRAW:
                suffix = "  (redraw)"
            print(f"  {addr:#05x}: {text}{suffix}")
            if outcome & StepOutcome.BLOCKED:
                break

    def do_run(self, arg):
        """Run until halt, key wait or breakpoint: run [max_steps]
        Timers are not ticked; use 'frame' for real frames."""
        max_steps = self._parse_int(arg) if arg.strip() else 1_000_000
        cpu = self.sys.cpu
        total = 0
        while total < max_steps:
            if cpu.state is RunState.HALTED:
                print(f"\nMachine halted after {total} steps.")
                break
            if total and cpu.pc in self.breakpoints:
                print(f"\nBreakpoint hit at {cpu.pc:#05x}")
                break
            try:
                outcome = cpu.step()
            except StackError as e:
                print(f"\nFatal after {total} steps: {e}")
                break
            total += 1
            if outcome & StepOutcome.BLOCKED:
                print(f"\nWaiting for a key at {cpu.pc:#05x} after {total} steps.")
                print("  Use 'key down <k>' to press one, then 'run' to continue.")
                break
        else:
            print(f"\nStopped after {total} steps.")

    def do_continue(self, arg):
        """Alias for 'run'."""
        self.do_run(arg)
    do_c = do_continue

    def do_frame(self, arg):
        """Run N full frames (batch + timer tick), unpaced: frame [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for n in range(count):
            if not self.sys.run_frame():
                print(f"Stopped after {n} frames.")
                break
        print(f"  PC={self.sys.cpu.pc:#05x}  DT={self.sys.cpu.delay_timer}  "
              f"ST={self.sys.cpu.sound_timer}")

    def do_reset(self, arg):
        """Soft reset: reload the current ROM."""
        self.sys.reset()
        print("Machine reset.")

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address>"""
        if not arg.strip():
            if self.breakpoints:
                print("Breakpoints:")
                for a in sorted(self.breakpoints):
                    print(f"  {a:#05x}")
            else:
                print("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        print(f"Breakpoint set at {addr:#05x}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            print("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        print(f"Breakpoint at {addr:#05x} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show registers, timers and state."""
        print(self.sys.cpu.dump_regs())
        print(f"  Steps: {self.sys.cpu.cycle_count}")

    def do_stack(self, arg):
        """Show the call stack, innermost last."""
        cpu = self.sys.cpu
        if cpu.sp == 0:
            print("  (empty)")
            return
        for depth in range(cpu.sp):
            print(f"  [{depth:2d}] {cpu.stack[depth]:#05x}")
        print(f"  {cpu.sp}/{STACK_DEPTH} used")

    def do_setreg(self, arg):
        """Set register: setreg <V0-VF|i|pc|dt|st> <value>"""
        parts = shlex.split(arg)
        if len(parts) < 2:
            print("Usage: setreg <reg> <value>")
            return
        reg_s = parts[0].lower()
        val = self._parse_int(parts[1])
        cpu = self.sys.cpu
        if reg_s == "pc":
            cpu.pc = val & 0xFFF
        elif reg_s == "i":
            cpu.i = val & 0xFFFF
        elif reg_s == "dt":
            cpu.delay_timer = val & 0xFF
        elif reg_s == "st":
            cpu.sound_timer = val & 0xFF
        elif reg_s.startswith("v") and len(reg_s) == 2:
            cpu.v[int(reg_s[1], 16)] = val & 0xFF
        else:
            print("Unknown register.")
            return
        print(f"  {reg_s.upper()} = {val:#x}")

    def do_dump(self, arg):
        """Hex dump memory: dump <address> [count]
        Count defaults to 64 bytes."""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: dump <address> [count]")
            return
        addr = self._parse_addr(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 64
        cpu = self.sys.cpu

        for row_start in range(addr, addr + count, 16):
            hex_bytes = []
            for i in range(16):
                if row_start + i < addr + count:
                    hex_bytes.append(f"{cpu.mem_read8(row_start + i):02x}")
                else:
                    hex_bytes.append("  ")
            hex_str = ' '.join(hex_bytes[:8]) + '  ' + ' '.join(hex_bytes[8:])
            print(f"  {row_start & 0xFFF:#05x}: {hex_str}")

    def do_setmem(self, arg):
        """Set memory bytes: setmem <address> <byte> [byte] ..."""
        parts = shlex.split(arg)
        if len(parts) < 2:
            print("Usage: setmem <addr> <byte...>")
            return
        addr = self._parse_addr(parts[0])
        for i, tok in enumerate(parts[1:]):
            self.sys.cpu.mem_write8(addr + i, self._parse_int(tok))
        print(f"  Wrote {len(parts) - 1} bytes at {addr:#05x}")

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        cpu = self.sys.cpu
        addr = self._parse_addr(parts[0]) if parts else cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16

        for _ in range(count):
            text, size = disasm_one(cpu.memory, addr)
            raw = ' '.join(f"{cpu.mem_read8(addr + i):02x}" for i in range(size))
            marker = ">>>" if addr == cpu.pc else "   "
            print(f"  {marker} {addr:#05x}: {raw:<6s} {text}")
            addr = (addr + size) % MEM_SIZE

    def do_key(self, arg):
        """Press or release a keypad key: key down|up <0-F>"""
        parts = shlex.split(arg)
        if len(parts) != 2 or parts[0] not in ("down", "up"):
            print("Usage: key down|up <0-F>")
            return
        key = int(parts[1], 16)
        if not 0 <= key <= 0xF:
            print("Key must be 0-F.")
            return
        if parts[0] == "down":
            self.sys.key_down(key)
        else:
            self.sys.key_up(key)
        pressed = [f"{k:X}" for k, d in enumerate(self.sys.cpu.keypad) if d]
        print(f"  Keys down: {' '.join(pressed) or '(none)'}")

    def do_screen(self, arg):
        """Print the display buffer as text."""
        cpu = self.sys.cpu
        print(render_ascii(cpu.display, cpu.width, cpu.height))

    def do_status(self, arg):
        """Show full system status."""
        print(self.sys.dump_state())

    def do_quit(self, arg):
        """Exit the monitor."""
        return True
    do_exit = do_quit

    def do_EOF(self, arg):
        print()
        return True

    def default(self, line):
        print(f"Unknown command: {line.split()[0]}  (type 'help')")

    def emptyline(self):
        pass


# ---------------------------------------------------------------------------
#  Entry point
# ---------------------------------------------------------------------------

def _parse_color(s: str) -> int:
    """RRGGBB or RRGGBBAA, with optional '#' or '0x' prefix."""
    h = s.strip().lower()
    if h.startswith("#"):
        h = h[1:]
    elif h.startswith("0x"):
        h = h[2:]
    if len(h) == 6:
        h += "ff"
    if len(h) != 8:
        raise argparse.ArgumentTypeError(f"invalid colour '{s}'")
    try:
        return int(h, 16)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid colour '{s}'") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chip8",
        description="CHIP-8 Emulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py roms/pong.ch8\n"
               "  python cli.py roms/pong.ch8 --scale 10 --ips 1000\n"
               "  python cli.py roms/pong.ch8 --fg 33ff66 --bg 101010 --no-pixelated\n"
               "  python cli.py roms/test.ch8 --disasm\n"
               "  python cli.py roms/test.ch8 --monitor\n"
               "  python cli.py roms/test.ch8 --headless --frames 120\n"
    )
    d = Chip8Config()
    parser.add_argument("rom", help="CHIP-8 program image")
    parser.add_argument("--scale", type=int, default=d.scale_factor, metavar="N",
                        help=f"Window pixels per CHIP-8 pixel (default: {d.scale_factor})")
    parser.add_argument("--width", type=int, default=d.window_width,
                        help=f"Logical grid width (default: {d.window_width})")
    parser.add_argument("--height", type=int, default=d.window_height,
                        help=f"Logical grid height (default: {d.window_height})")
    parser.add_argument("--fg", type=_parse_color, default=d.fg_color,
                        metavar="RRGGBB[AA]", help="Foreground colour (default: ffffffff)")
    parser.add_argument("--bg", type=_parse_color, default=d.bg_color,
                        metavar="RRGGBB[AA]", help="Background colour (default: 000000ff)")
    parser.add_argument("--no-pixelated", dest="pixelated", action="store_false",
                        help="Do not outline lit pixels")
    parser.add_argument("--ips", type=int, default=d.instructions_per_second,
                        help=f"Instructions per second (default: {d.instructions_per_second})")
    parser.add_argument("--freq", type=int, default=d.square_wave_freq,
                        help=f"Tone frequency in Hz (default: {d.square_wave_freq})")
    parser.add_argument("--sample-rate", type=int, default=d.audio_sample_rate,
                        help=f"Audio sample rate (default: {d.audio_sample_rate})")
    parser.add_argument("--volume", type=int, default=d.volume,
                        help=f"Tone amplitude 0-32767 (default: {d.volume})")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the RND instruction")
    parser.add_argument("--mute", action="store_true",
                        help="Disable audio output")
    parser.add_argument("--trace", "-t", action="store_true",
                        help="Print every executed instruction")
    parser.add_argument("--disasm", action="store_true",
                        help="Print a disassembly listing of the ROM and exit")
    parser.add_argument("--monitor", action="store_true",
                        help="Load the ROM and enter the debug monitor")
    parser.add_argument("--headless", action="store_true",
                        help="Run without a window, unpaced, then print state")
    parser.add_argument("--frames", type=int, default=600,
                        help="Frames to run in headless mode (default: 600)")
    return parser


def config_from_args(args: argparse.Namespace) -> Chip8Config:
    return Chip8Config(
        window_width=args.width,
        window_height=args.height,
        fg_color=args.fg,
        bg_color=args.bg,
        scale_factor=args.scale,
        pixelated=args.pixelated,
        instructions_per_second=args.ips,
        square_wave_freq=args.freq,
        audio_sample_rate=args.sample_rate,
        volume=args.volume,
        seed=args.seed,
    )


def main(argv: list[str] | None = None):
    args = build_parser().parse_args(argv)

    try:
        config = config_from_args(args)
        config.validate()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # ---- Disassemble-only mode ----------------------------------------
    if args.disasm:
        try:
            with open(args.rom, "rb") as f:
                image = f.read()
        except OSError as e:
            print(f"Error: cannot read '{args.rom}': {e.strerror or e}",
                  file=sys.stderr)
            sys.exit(1)
        for line in disasm_image(image):
            print(line)
        return

    # ---- Front end ----------------------------------------------------
    windowed = not (args.headless or args.monitor)
    if windowed:
        from display import PygameFrontend
        frontend = PygameFrontend(config)
        frontend.audio_enabled = not args.mute
    else:
        frontend = HeadlessDisplay(keep_frames=False)

    if args.headless:
        sys_emu = Chip8System(config, frontend=frontend, sleep=lambda s: None)
    else:
        sys_emu = Chip8System(config, frontend=frontend)

    try:
        sys_emu.load_file(args.rom)
    except LoadError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Loaded {len(sys_emu.cpu.image)} bytes from '{args.rom}' "
          f"at {ENTRY_POINT:#05x}")

    if args.trace:
        sys_emu.cpu.on_step = trace_step

    # ---- Monitor mode -------------------------------------------------
    if args.monitor:
        mon = Chip8Monitor(sys_emu)
        try:
            mon.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return

    # ---- Headless mode ------------------------------------------------
    if args.headless:
        frames = sys_emu.run(max_frames=args.frames)
        print(f"Ran {frames} frames.")
        print(sys_emu.dump_state())
        print(render_ascii(sys_emu.cpu.display, config.window_width,
                           config.window_height))
        if sys_emu.fatal is not None:
            sys.exit(1)
        return

    # ---- Windowed mode ------------------------------------------------
    try:
        frontend.open()
    except ImportError as e:
        print(f"[display] pygame not available: {e}", file=sys.stderr)
        print("[display] Install with: pip install pygame", file=sys.stderr)
        sys.exit(1)

    try:
        sys_emu.run()
    except KeyboardInterrupt:
        print("\nInterrupted.")
    except HaltError as e:
        print(f"[chip8] {e}", file=sys.stderr)
    finally:
        frontend.close()

    if sys_emu.fatal is not None:
        sys.exit(1)


if __name__ == "__main__":
    main()
