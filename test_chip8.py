#!/usr/bin/env python3
"""
CHIP-8 interpreter core tests.

Covers the decoder, loading, every opcode family, the display XOR/clip
model, the key-wait path and the timers.
"""
import os
import random
import tempfile
import unittest

from chip8 import (
    Chip8, Instruction, Op, AluOp, MiscOp, RunState, StepOutcome, AudioGate,
    ImageTooLarge, ImageUnreadable, LoadError, StackOverflowError,
    StackUnderflowError, StackError, HaltError, decode,
    ENTRY_POINT, MAX_IMAGE, FONT, DISPLAY_WIDTH, DISPLAY_SIZE, STACK_DEPTH,
    REG_VF,
)


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def words_to_image(*words: int) -> bytes:
    out = bytearray()
    for w in words:
        out += bytes([(w >> 8) & 0xFF, w & 0xFF])
    return bytes(out)


def make_cpu(*words: int, seed: int = 0) -> Chip8:
    cpu = Chip8(rng=random.Random(seed))
    cpu.load(words_to_image(*words))
    return cpu


def run_ops(*words: int) -> Chip8:
    """Load *words* and execute exactly one step per word."""
    cpu = make_cpu(*words)
    for _ in words:
        cpu.step()
    return cpu


def lit(cpu: Chip8, x: int, y: int) -> bool:
    return cpu.display[y * DISPLAY_WIDTH + x]


# ---------------------------------------------------------------------------
#  Decoder
# ---------------------------------------------------------------------------

class TestDecode(unittest.TestCase):
    def test_fields(self):
        inst = decode(0xD4A7)
        self.assertEqual(inst.opcode, 0xD4A7)
        self.assertEqual(inst.nnn, 0x4A7)
        self.assertEqual(inst.nn, 0xA7)
        self.assertEqual(inst.n, 0x7)
        self.assertEqual(inst.x, 0x4)
        self.assertEqual(inst.y, 0xA)
        self.assertIs(inst.op, Op.DRW)

    def test_classes(self):
        cases = {
            0x00E0: Op.CLS, 0x00EE: Op.RET, 0x1234: Op.JP, 0x2345: Op.CALL,
            0x3A12: Op.SE_IMM, 0x4A12: Op.SNE_IMM, 0x5AB0: Op.SE_REG,
            0x6A12: Op.LD_IMM, 0x7A12: Op.ADD_IMM, 0x9AB0: Op.SNE_REG,
            0xA123: Op.LD_I, 0xB123: Op.JP_V0, 0xCAFF: Op.RND,
            0xDAB5: Op.DRW, 0xE39E: Op.SKP, 0xE3A1: Op.SKNP,
        }
        for opcode, op in cases.items():
            with self.subTest(opcode=f"{opcode:04X}"):
                self.assertIs(decode(opcode).op, op)

    def test_alu_group(self):
        for n, sub in [(0x0, AluOp.MOV), (0x4, AluOp.ADD),
                       (0x7, AluOp.SUBN), (0xE, AluOp.SHL)]:
            inst = decode(0x8120 | n)
            self.assertIs(inst.op, Op.ALU)
            self.assertIs(inst.alu, sub)
            self.assertIsNone(inst.misc)

    def test_misc_group(self):
        for nn, sub in [(0x07, MiscOp.LD_VX_DT), (0x0A, MiscOp.LD_KEY),
                        (0x33, MiscOp.BCD), (0x65, MiscOp.LOAD)]:
            inst = decode(0xF500 | nn)
            self.assertIs(inst.op, Op.MISC)
            self.assertIs(inst.misc, sub)
            self.assertIsNone(inst.alu)

    def test_unknown(self):
        for opcode in (0x0123, 0x00E1, 0x5AB1, 0x9AB3, 0x8AB8, 0x8ABF,
                       0xE100, 0xF0FF, 0xF000):
            with self.subTest(opcode=f"{opcode:04X}"):
                self.assertIs(decode(opcode).op, Op.UNKNOWN)

    def test_total(self):
        for opcode in range(0x10000):
            inst = decode(opcode)
            self.assertIsInstance(inst, Instruction)
            self.assertEqual(inst.nnn, opcode & 0xFFF)
            self.assertLessEqual(inst.x, 15)
            self.assertLessEqual(inst.y, 15)


# ---------------------------------------------------------------------------
#  Loading
# ---------------------------------------------------------------------------

class TestLoad(unittest.TestCase):
    def test_initial_state(self):
        cpu = make_cpu(0x1200)
        self.assertEqual(cpu.pc, ENTRY_POINT)
        self.assertEqual(cpu.sp, 0)
        self.assertIs(cpu.state, RunState.RUNNING)
        self.assertEqual(bytes(cpu.memory[:len(FONT)]), FONT)
        self.assertEqual(cpu.memory[ENTRY_POINT:ENTRY_POINT + 2], b"\x12\x00")
        self.assertEqual(cpu.delay_timer, 0)
        self.assertEqual(cpu.sound_timer, 0)
        self.assertFalse(any(cpu.display))

    def test_capacity(self):
        cpu = Chip8()
        cpu.load(bytes(MAX_IMAGE))
        self.assertEqual(MAX_IMAGE, 4096 - 0x200)
        with self.assertRaises(ImageTooLarge):
            cpu.load(bytes(MAX_IMAGE + 1))

    def test_last_byte_of_memory(self):
        cpu = Chip8()
        cpu.load(bytes(MAX_IMAGE - 1) + b"\xAB")
        self.assertEqual(cpu.memory[0xFFF], 0xAB)

    def test_unreadable(self):
        cpu = Chip8()
        with tempfile.TemporaryDirectory() as d:
            with self.assertRaises(ImageUnreadable) as ctx:
                cpu.load_file(os.path.join(d, "missing.ch8"))
        self.assertIsInstance(ctx.exception, LoadError)

    def test_load_file(self):
        with tempfile.NamedTemporaryFile(suffix=".ch8", delete=False) as f:
            f.write(words_to_image(0x6042))
            path = f.name
        try:
            cpu = Chip8()
            cpu.load_file(path)
            cpu.step()
            self.assertEqual(cpu.v[0], 0x42)
        finally:
            os.unlink(path)

    def test_reset_restores_image(self):
        cpu = make_cpu(0x6005, 0xA300, 0xF055, 0x1206)
        cpu.run(10)
        self.assertEqual(cpu.memory[0x300], 5)
        cpu.reset()
        self.assertEqual(cpu.v[0], 0)
        self.assertEqual(cpu.memory[0x300], 0)
        self.assertEqual(cpu.pc, ENTRY_POINT)
        self.assertEqual(cpu.memory[ENTRY_POINT], 0x60)
        self.assertIs(cpu.state, RunState.RUNNING)

    def test_step_before_load(self):
        with self.assertRaises(HaltError):
            Chip8().step()


# ---------------------------------------------------------------------------
#  Flow control
# ---------------------------------------------------------------------------

class TestFlow(unittest.TestCase):
    def test_jump(self):
        cpu = run_ops(0x1ABC)
        self.assertEqual(cpu.pc, 0xABC)

    def test_call_and_return(self):
        cpu = make_cpu(0x2206, 0x6001, 0x1204, 0x00EE)
        cpu.step()
        self.assertEqual(cpu.pc, 0x206)
        self.assertEqual(cpu.sp, 1)
        self.assertEqual(cpu.stack[0], 0x202)
        cpu.step()
        self.assertEqual(cpu.pc, 0x202)
        self.assertEqual(cpu.sp, 0)
        cpu.step()
        self.assertEqual(cpu.v[0], 1)

    def test_stack_overflow_halts(self):
        cpu = make_cpu(0x2200)
        for _ in range(STACK_DEPTH):
            cpu.step()
        self.assertEqual(cpu.sp, STACK_DEPTH)
        with self.assertRaises(StackOverflowError):
            cpu.step()
        self.assertIs(cpu.state, RunState.HALTED)
        with self.assertRaises(HaltError):
            cpu.step()

    def test_stack_underflow_halts(self):
        cpu = make_cpu(0x00EE)
        with self.assertRaises(StackUnderflowError) as ctx:
            cpu.step()
        self.assertIsInstance(ctx.exception, StackError)
        self.assertIs(cpu.state, RunState.HALTED)

    def test_skip_immediate(self):
        self.assertEqual(run_ops(0x3000).pc, 0x204)   # V0 == 0
        self.assertEqual(run_ops(0x3001).pc, 0x202)
        self.assertEqual(run_ops(0x4001).pc, 0x204)
        self.assertEqual(run_ops(0x4000).pc, 0x202)

    def test_skip_register(self):
        cpu = make_cpu(0x6105, 0x6205, 0x5120)
        cpu.run(3)
        self.assertEqual(cpu.pc, 0x208)
        cpu = make_cpu(0x6105, 0x6206, 0x9120)
        cpu.run(3)
        self.assertEqual(cpu.pc, 0x208)
        cpu = make_cpu(0x6105, 0x6205, 0x9120)
        cpu.run(3)
        self.assertEqual(cpu.pc, 0x206)

    def test_jump_with_offset(self):
        cpu = run_ops(0x6010, 0xB300)
        self.assertEqual(cpu.pc, 0x310)

    def test_jump_with_offset_masks_to_12_bits(self):
        cpu = run_ops(0x60FF, 0xBFFF)
        self.assertEqual(cpu.pc, (0xFF + 0xFFF) & 0xFFF)

    def test_unknown_is_noop(self):
        cpu = make_cpu(0x0123, 0x8AB8, 0xF0FF)
        before = bytes(cpu.v)
        outcome = cpu.step()
        cpu.step()
        cpu.step()
        self.assertEqual(outcome, StepOutcome.NONE)
        self.assertEqual(cpu.pc, 0x206)
        self.assertEqual(bytes(cpu.v), before)

    def test_on_step_callback(self):
        seen = []
        cpu = make_cpu(0x6001, 0x7001)
        cpu.on_step = lambda addr, inst: seen.append((addr, inst.op))
        cpu.run(2)
        self.assertEqual(seen, [(0x200, Op.LD_IMM), (0x202, Op.ADD_IMM)])


# ---------------------------------------------------------------------------
#  Registers and ALU
# ---------------------------------------------------------------------------

class TestALU(unittest.TestCase):
    def _alu(self, opcode: int, a: int, b: int, vf: int = 0) -> Chip8:
        cpu = make_cpu(opcode)
        cpu.v[REG_VF] = vf
        cpu.v[opcode >> 8 & 0xF] = a
        cpu.v[opcode >> 4 & 0xF] = b
        cpu.step()
        return cpu

    def test_end_to_end_add(self):
        cpu = run_ops(0x6005, 0x6102, 0x8014)
        self.assertEqual(cpu.v[0], 7)
        self.assertEqual(cpu.v[REG_VF], 0)
        self.assertEqual(cpu.pc, ENTRY_POINT + 6)

    def test_load_and_add_immediate(self):
        cpu = run_ops(0x63F0, 0x6F01, 0x7320)
        self.assertEqual(cpu.v[3], 0x10)          # wraps
        self.assertEqual(cpu.v[REG_VF], 1)        # untouched

    def test_add_all_pairs(self):
        cpu = make_cpu(0x8014)
        for a in range(256):
            for b in range(256):
                cpu.pc = ENTRY_POINT
                cpu.v[0], cpu.v[1] = a, b
                cpu.step()
                self.assertEqual(cpu.v[0], (a + b) % 256)
                self.assertEqual(cpu.v[REG_VF], 1 if a + b > 255 else 0)

    def test_sub_all_pairs(self):
        cpu = make_cpu(0x8015)
        for a in range(256):
            for b in range(256):
                cpu.pc = ENTRY_POINT
                cpu.v[0], cpu.v[1] = a, b
                cpu.step()
                self.assertEqual(cpu.v[0], (a - b) % 256)
                self.assertEqual(cpu.v[REG_VF], 1 if a >= b else 0)

    def test_subn(self):
        cpu = self._alu(0x8017, 0x10, 0x30)
        self.assertEqual(cpu.v[0], 0x20)
        self.assertEqual(cpu.v[REG_VF], 1)
        cpu = self._alu(0x8017, 0x30, 0x10)
        self.assertEqual(cpu.v[0], 0xE0)
        self.assertEqual(cpu.v[REG_VF], 0)

    def test_shifts(self):
        cpu = self._alu(0x8016, 0x05, 0x00)
        self.assertEqual(cpu.v[0], 0x02)
        self.assertEqual(cpu.v[REG_VF], 1)
        cpu = self._alu(0x8016, 0x04, 0xFF)
        self.assertEqual(cpu.v[0], 0x02)
        self.assertEqual(cpu.v[REG_VF], 0)
        cpu = self._alu(0x801E, 0x81, 0x00)
        self.assertEqual(cpu.v[0], 0x02)
        self.assertEqual(cpu.v[REG_VF], 1)
        cpu = self._alu(0x801E, 0x41, 0x00)
        self.assertEqual(cpu.v[0], 0x82)
        self.assertEqual(cpu.v[REG_VF], 0)

    def test_logic_leaves_flag(self):
        for opcode, expect in [(0x8010, 0x0F), (0x8011, 0xFF),
                               (0x8012, 0x00), (0x8013, 0xFF)]:
            with self.subTest(opcode=f"{opcode:04X}"):
                cpu = self._alu(opcode, 0xF0, 0x0F, vf=0x55)
                self.assertEqual(cpu.v[0], expect)
                self.assertEqual(cpu.v[REG_VF], 0x55)

    def test_flag_register_as_destination(self):
        # VF += V1 with carry: flag written after the sum
        cpu = make_cpu(0x8F14)
        cpu.v[REG_VF], cpu.v[1] = 0xFF, 0x02
        cpu.step()
        self.assertEqual(cpu.v[REG_VF], 1)
        cpu = make_cpu(0x8F14)
        cpu.v[REG_VF], cpu.v[1] = 0x01, 0x02
        cpu.step()
        self.assertEqual(cpu.v[REG_VF], 0)
        # VF as source operand is read before the flag lands
        cpu = make_cpu(0x80F5)
        cpu.v[0], cpu.v[REG_VF] = 0x10, 0x01
        cpu.step()
        self.assertEqual(cpu.v[0], 0x0F)
        self.assertEqual(cpu.v[REG_VF], 1)

    def test_random_masked_and_seeded(self):
        a = make_cpu(*([0xC30F] * 20), seed=1234)
        b = make_cpu(*([0xC30F] * 20), seed=1234)
        for _ in range(20):
            a.step()
            b.step()
            self.assertLessEqual(a.v[3], 0x0F)
            self.assertEqual(a.v[3], b.v[3])
        cpu = run_ops(0xC300)
        self.assertEqual(cpu.v[3], 0)


# ---------------------------------------------------------------------------
#  Display
# ---------------------------------------------------------------------------

class TestDraw(unittest.TestCase):
    def test_clear(self):
        cpu = make_cpu(0x00E0)
        cpu.display[5] = True
        outcome = cpu.step()
        self.assertFalse(any(cpu.display))
        self.assertTrue(outcome & StepOutcome.REDRAW)
        self.assertTrue(cpu.draw)

    def test_draw_font_glyph(self):
        # "0" glyph at (0, 0)
        cpu = run_ops(0x6000, 0xF029, 0xD005)
        self.assertEqual(cpu.i, 0)
        rows = ["".join("#" if lit(cpu, x, y) else "." for x in range(4))
                for y in range(5)]
        self.assertEqual(rows, ["####", "#..#", "#..#", "#..#", "####"])
        self.assertEqual(cpu.v[REG_VF], 0)
        self.assertTrue(cpu.draw)

    def test_double_draw_restores_and_collides(self):
        cpu = make_cpu(0x600A, 0x6105, 0xF029, 0xD015, 0xD015)
        cpu.run(4)
        first = list(cpu.display)
        self.assertTrue(any(first))
        self.assertEqual(cpu.v[REG_VF], 0)
        outcome = cpu.step()
        self.assertTrue(outcome & StepOutcome.REDRAW)
        self.assertFalse(any(cpu.display))
        self.assertEqual(cpu.v[REG_VF], 1)

    def test_clip_right_edge(self):
        # 8-pixel-wide solid row at x=60: only 60..63 drawn
        cpu = make_cpu(0x603C, 0x6100, 0xA300, 0xD011)
        cpu.memory[0x300] = 0xFF
        cpu.run(4)
        lit_cols = [x for x in range(DISPLAY_WIDTH) if lit(cpu, x, 0)]
        self.assertEqual(lit_cols, [60, 61, 62, 63])
        self.assertFalse(lit(cpu, 0, 1))      # no wrap to next row
        self.assertFalse(lit(cpu, 0, 0))      # no wrap to column 0
        self.assertEqual(len(cpu.display), DISPLAY_SIZE)

    def test_clip_bottom_edge(self):
        cpu = make_cpu(0x6000, 0x611E, 0xA300, 0xD01F)
        for r in range(15):
            cpu.memory[0x300 + r] = 0x80
        cpu.run(4)
        self.assertTrue(lit(cpu, 0, 30))
        self.assertTrue(lit(cpu, 0, 31))
        self.assertEqual(sum(cpu.display), 2)

    def test_origin_wraps(self):
        cpu = make_cpu(0x6042, 0x6121, 0xA300, 0xD011)
        cpu.memory[0x300] = 0x80
        cpu.run(4)
        self.assertTrue(lit(cpu, 2, 1))       # (66 % 64, 33 % 32)
        self.assertEqual(sum(cpu.display), 1)

    def test_collision_flag_only_on_turn_off(self):
        cpu = make_cpu(0x6000, 0x6100, 0xA300, 0xD011, 0xA301, 0xD011)
        cpu.memory[0x300] = 0xF0
        cpu.memory[0x301] = 0x0F
        cpu.run(6)
        self.assertEqual(cpu.v[REG_VF], 0)
        self.assertEqual(sum(cpu.display), 8)

    def test_small_logical_grid(self):
        cpu = Chip8(width=32, height=16)
        cpu.load(words_to_image(0x601E, 0x6100, 0xA300, 0xD011))
        cpu.memory[0x300] = 0xFF
        cpu.run(4)
        lit_cols = [x for x in range(DISPLAY_WIDTH) if lit(cpu, x, 0)]
        self.assertEqual(lit_cols, [30, 31])
        with self.assertRaises(ValueError):
            Chip8(width=65)


# ---------------------------------------------------------------------------
#  Keypad
# ---------------------------------------------------------------------------

class TestKeys(unittest.TestCase):
    def test_skip_if_pressed(self):
        cpu = make_cpu(0x6305, 0xE39E)
        cpu.set_key(5, True)
        cpu.run(2)
        self.assertEqual(cpu.pc, 0x206)
        cpu = make_cpu(0x6305, 0xE3A1)
        cpu.run(2)
        self.assertEqual(cpu.pc, 0x206)
        cpu = make_cpu(0x6305, 0xE3A1)
        cpu.set_key(5, True)
        cpu.run(2)
        self.assertEqual(cpu.pc, 0x204)

    def test_key_index_masked(self):
        cpu = make_cpu(0x6315, 0xE39E)
        cpu.set_key(5, True)
        cpu.run(2)
        self.assertEqual(cpu.pc, 0x206)

    def test_wait_for_key_blocks(self):
        cpu = make_cpu(0xF30A, 0x1202)
        regs = bytes(cpu.v)
        outcome = cpu.step()
        self.assertTrue(outcome & StepOutcome.BLOCKED)
        self.assertEqual(cpu.pc, 0x200)
        self.assertEqual(bytes(cpu.v), regs)
        outcome = cpu.step()
        self.assertTrue(outcome & StepOutcome.BLOCKED)
        self.assertEqual(cpu.pc, 0x200)

    def test_wait_for_key_lowest_pressed(self):
        cpu = make_cpu(0xF30A)
        cpu.step()
        cpu.set_key(0xB, True)
        cpu.set_key(0x7, True)
        outcome = cpu.step()
        self.assertEqual(outcome, StepOutcome.NONE)
        self.assertEqual(cpu.v[3], 0x7)
        self.assertEqual(cpu.pc, 0x202)

    def test_blocked_instruction_reused(self):
        seen = []
        cpu = make_cpu(0xF30A)
        cpu.on_step = lambda addr, inst: seen.append(inst)
        cpu.step()
        cpu.set_key(2, True)
        cpu.step()
        self.assertEqual(cpu.v[3], 2)
        self.assertIs(seen[0], seen[1])

    def test_wait_dropped_when_pc_moves(self):
        cpu = make_cpu(0xF00A, 0x00E0, 0x6042)
        cpu.step()
        cpu.pc = 0x204
        cpu.set_key(3, True)
        cpu.step()
        self.assertEqual(cpu.v[0], 0x42)
        self.assertEqual(cpu.pc, 0x206)

    def test_wait_dropped_when_opcode_rewritten(self):
        cpu = make_cpu(0xF00A)
        cpu.step()
        cpu.mem_write8(0x200, 0x61)
        cpu.mem_write8(0x201, 0x07)              # LD V1, 0x07
        cpu.set_key(3, True)
        cpu.step()
        self.assertEqual(cpu.v[1], 7)
        self.assertEqual(cpu.v[0], 0)
        self.assertEqual(cpu.pc, 0x202)

    def test_run_stops_when_blocked(self):
        cpu = make_cpu(0x6001, 0xF00A, 0x6002)
        self.assertEqual(cpu.run(100), 2)
        self.assertEqual(cpu.pc, 0x202)


# ---------------------------------------------------------------------------
#  Index register, memory and timers
# ---------------------------------------------------------------------------

class TestMisc(unittest.TestCase):
    def test_set_and_add_index(self):
        cpu = run_ops(0xA123, 0x6010, 0x6F07, 0xF01E)
        self.assertEqual(cpu.i, 0x133)
        self.assertEqual(cpu.v[REG_VF], 7)

    def test_font_address(self):
        cpu = run_ops(0x600F, 0xF029)
        self.assertEqual(cpu.i, 0xF * 5)

    def test_bcd(self):
        for value, digits in [(255, [2, 5, 5]), (0, [0, 0, 0]),
                              (7, [0, 0, 7]), (140, [1, 4, 0])]:
            with self.subTest(value=value):
                cpu = run_ops(0x6000 | value, 0xA300, 0xF033)
                self.assertEqual(list(cpu.memory[0x300:0x303]), digits)
                self.assertEqual(cpu.i, 0x300)

    def test_dump_load_round_trip(self):
        for x in range(16):
            with self.subTest(x=x):
                cpu = make_cpu(0xA400, 0xF055 | (x << 8), 0xF065 | (x << 8))
                saved = bytes(range(0x10, 0x20))
                cpu.v[:] = saved
                cpu.run(2)
                self.assertEqual(bytes(cpu.memory[0x400:0x401 + x]),
                                 saved[:x + 1])
                if x < 15:
                    self.assertEqual(cpu.memory[0x401 + x], 0)
                cpu.v[:] = bytes(16)
                cpu.step()
                self.assertEqual(bytes(cpu.v[:x + 1]), saved[:x + 1])
                self.assertEqual(cpu.i, 0x400)

    def test_timer_registers(self):
        cpu = run_ops(0x6030, 0xF015, 0xF118, 0xF207)
        self.assertEqual(cpu.delay_timer, 0x30)
        self.assertEqual(cpu.sound_timer, 0)
        self.assertEqual(cpu.v[2], 0x30)

    def test_tick_floors_at_zero(self):
        cpu = make_cpu(0x1200)
        for _ in range(3):
            self.assertIs(cpu.tick_timers(), AudioGate.OFF)
        self.assertEqual(cpu.delay_timer, 0)
        self.assertEqual(cpu.sound_timer, 0)

    def test_tick_and_audio_gate(self):
        cpu = make_cpu(0x1200)
        cpu.delay_timer = 3
        cpu.sound_timer = 2
        self.assertIs(cpu.tick_timers(), AudioGate.ON)
        self.assertEqual((cpu.delay_timer, cpu.sound_timer), (2, 1))
        self.assertIs(cpu.tick_timers(), AudioGate.OFF)
        self.assertEqual((cpu.delay_timer, cpu.sound_timer), (1, 0))

    def test_addresses_wrap_in_memory(self):
        cpu = run_ops(0x60FF, 0xAFFF, 0xF033)
        self.assertEqual(cpu.memory[0xFFF], 2)
        self.assertEqual(cpu.memory[0x000], 5)

    def test_dump_regs(self):
        cpu = run_ops(0x6A42)
        text = cpu.dump_regs()
        self.assertIn("VA=0x42", text)
        self.assertIn("PC=0x202", text)


if __name__ == "__main__":
    unittest.main()
