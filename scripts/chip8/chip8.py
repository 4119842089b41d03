# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# COMPATIBILITY QUIRKS TABLE
# https://games.gulrak.net/cadmium/chip8-opcode-table.html#quirk6
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908
#
# TEST SUITE
# https://github.com/Timendus/chip8-test-suite


import logging
import random
from collections import namedtuple
from enum import Enum
from functools import wraps


log = logging.getLogger(__name__)


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
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
            0xF0, 0x80, 0xF0, 0x80, 0x80]  # F

MEMORY_SIZE = 4096
ROM_START_ADDRESS = 0x200
FONT_START_ADDRESS = 0x50
FONT_GLYPH_SIZE = 5
MAX_ADDRESS = 0x0FFF
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
STACK_LIMIT = 16
KEY_COUNT = 16


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    """base class of every error raised by the interpreter and its host"""


class RomLoadError(Chip8Error):
    """the ROM image could not be read, raised before execution begins"""


class MemoryAccessError(Chip8Error):
    def __init__(self, address, length=1):
        self.address = address
        self.length = length
        super().__init__(
            f"memory access out of range: 0x{address:04x} (+{length}) "
            f"outside 0x0000-0x{MEMORY_SIZE - 1:04x}"
        )


class ExecutionError(Chip8Error):
    """an instruction could not be executed; keeps the word and the address it was fetched from"""
    reason = "execution error"

    def __init__(self, word, pc=None, reason=None):
        self.word = word
        self.pc = pc
        msg = f"{reason or self.reason}: instruction 0x{word:04x}"
        if pc is not None:
            msg += f" at 0x{pc:04x}"
        super().__init__(msg)


class DecodeError(ExecutionError):
    reason = "unknown opcode"


class StackUnderflowError(ExecutionError):
    reason = "return with an empty call stack"


class StackOverflowError(ExecutionError):
    reason = f"call stack limit of {STACK_LIMIT} addresses exceeded"


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to log the ASM of the instruction being executed"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(self, ins):
            if log.isEnabledFor(logging.DEBUG):
                log.debug("mem_addr: 0x%04x    instruction: %s", self.op_addr, msg.format(**ins.fields()))
            return fn(self, ins)
        return wrapper_fn
    return decorator


# ******************** DECODER SECTION
class Op(Enum):
    """every documented CHIP-8 instruction, valued by its opcode with the operand nibbles masked out"""
    SYS = 0x0000
    CLS = 0x00E0
    RET = 0x00EE
    JP = 0x1000
    CALL = 0x2000
    SE_BYTE = 0x3000
    SNE_BYTE = 0x4000
    SE_REG = 0x5000
    LD_BYTE = 0x6000
    ADD_BYTE = 0x7000
    LD_REG = 0x8000
    OR = 0x8001
    AND = 0x8002
    XOR = 0x8003
    ADD_REG = 0x8004
    SUB = 0x8005
    SHR = 0x8006
    SUBN = 0x8007
    SHL = 0x800E
    SNE_REG = 0x9000
    LD_I = 0xA000
    JP_V = 0xB000
    RND = 0xC000
    DRW = 0xD000
    SKP = 0xE09E
    SKNP = 0xE0A1
    LD_VX_DT = 0xF007
    LD_VX_K = 0xF00A
    LD_DT_VX = 0xF015
    LD_ST_VX = 0xF018
    ADD_I = 0xF01E
    LD_F = 0xF029
    LD_B = 0xF033
    LD_STORE = 0xF055
    LD_LOAD = 0xF065


# WATCH OUT: masks order is important!!!
# decode stops at the first mask whose pattern is known, and 0x0000 under
# 0xF000 catches every 0nnn word that is not CLS or RET
DECODE_MASKS = [
    (mask, {op.value: op for op in ops})
    for mask, ops in (
        (0xFFFF, (Op.CLS, Op.RET)),
        (0xF0FF, (Op.SKP, Op.SKNP, Op.LD_VX_DT, Op.LD_VX_K, Op.LD_DT_VX, Op.LD_ST_VX,
                  Op.ADD_I, Op.LD_F, Op.LD_B, Op.LD_STORE, Op.LD_LOAD)),
        (0xF00F, (Op.SE_REG, Op.LD_REG, Op.OR, Op.AND, Op.XOR, Op.ADD_REG, Op.SUB,
                  Op.SHR, Op.SUBN, Op.SHL, Op.SNE_REG)),
        (0xF000, (Op.SYS, Op.JP, Op.CALL, Op.SE_BYTE, Op.SNE_BYTE, Op.LD_BYTE,
                  Op.ADD_BYTE, Op.LD_I, Op.JP_V, Op.RND, Op.DRW)),
    )
]


class Instruction(namedtuple("Instruction", "op n1 n2 n3 n4")):
    """a decoded instruction word: its Op tag and its four nibbles, n1 being the highest"""
    __slots__ = ()

    @classmethod
    def from_word(cls, op, word):
        return cls(op, (word >> 12) & 0xF, (word >> 8) & 0xF, (word >> 4) & 0xF, word & 0xF)

    @property
    def word(self):
        return self.n1 << 12 | self.n2 << 8 | self.n3 << 4 | self.n4

    @property
    def x(self):
        return self.n2

    @property
    def y(self):
        return self.n3

    @property
    def n(self):
        return self.n4

    @property
    def nn(self):
        return self.n3 << 4 | self.n4

    @property
    def nnn(self):
        return self.n2 << 8 | self.n3 << 4 | self.n4

    def fields(self):
        return {'x': self.x, 'y': self.y, 'n': self.n, 'nn': self.nn, 'nnn': self.nnn}


def decode(opcode, pc=None):
    """
    decode an instruction word using masks and return the matching Instruction
    raise DecodeError if the word is not a documented opcode
    """
    for mask, ops in DECODE_MASKS:
        op = ops.get(opcode & mask)
        if op is not None:
            return Instruction.from_word(op, opcode)
    raise DecodeError(opcode, pc)


# ******************** I/O SECTION
class Display:
    """the 64x32 monochrome framebuffer, stored row-major as a flat list of booleans"""

    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = [False] * h * w

    def read_pixel(self, x, y):
        return self.buffer[y * self.w + x]

    def xor_pixel(self, x, y):
        """flip a pixel, return True if it was ON and got turned OFF"""
        i = y * self.w + x
        was_on = self.buffer[i]
        self.buffer[i] = not was_on
        return was_on

    def clear(self):
        self.buffer = [False] * self.h * self.w

    def rows(self):
        return tuple(tuple(self.buffer[r * self.w:(r + 1) * self.w]) for r in range(self.h))


class Keypad:
    """snapshot of the 16 CHIP-8 keys, replaced by the host before each batch of cycles"""

    def __init__(self):
        self.keys = [False] * KEY_COUNT

    def __getitem__(self, key):
        return self.keys[key & 0xF]

    def update(self, flags):
        flags = [bool(f) for f in flags]
        if len(flags) != KEY_COUNT:
            raise ValueError(f"the keypad has {KEY_COUNT} keys, got {len(flags)} flags")
        self.keys = flags

    def untouched(self):
        return not any(self.keys)

    def first(self):
        """lowest index of the keys held down, None if no key is down"""
        for key, down in enumerate(self.keys):
            if down:
                return key
        return None

    def __str__(self):
        return " ".join(f"{k:X}" for k, down in enumerate(self.keys) if down) or "-"


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 16 ADDRESSES
class Stack:
    def __init__(self, limit=STACK_LIMIT):
        self.addr_list = []
        self.limit = limit

    def __len__(self):
        return len(self.addr_list)

    def append(self, address):
        if len(self.addr_list) >= self.limit:
            raise IndexError(f"The CHIP-8 stack can contain at most {self.limit} addresses. Limit exceeded")
        self.addr_list.append(address)

    def pop(self):
        if not self.addr_list:
            raise IndexError("pop from an empty CHIP-8 stack")
        return self.addr_list.pop()

    def clear(self):
        self.addr_list = []

    def __str__(self):
        return "[" + ", ".join(f"0x{a:04x}" for a in self.addr_list) + "]"


# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self, size=MEMORY_SIZE):
        self.inner = bytearray(size)

    def __len__(self):
        return len(self.inner)

    def _check(self, address, length=1):
        if address < 0 or address + length > len(self):
            raise MemoryAccessError(address, length)

    def __getitem__(self, address):
        self._check(address)
        return self.inner[address]

    def __setitem__(self, address, value):
        self._check(address)
        self.inner[address] = value & 0xFF

    def read(self, address, length):
        self._check(address, length)
        return bytes(self.inner[address:address + length])

    def write(self, address, data):
        data = bytes(data)
        self._check(address, len(data))
        self.inner[address:address + len(data)] = data

    def clear(self):
        self.inner = bytearray(len(self))


# ******************** CPU SECTION
class Chip8:
    def __init__(self, rng=random):
        self.rng = rng      # anything with randint(a, b), used by RND
        self.mem = Memory()
        self.stack = Stack()
        self.display = Display()
        self.keypad = Keypad()
        self.reset()
        self.instructions = {
            Op.SYS: self._sys,
            Op.CLS: self._clear_screen,
            Op.RET: self._return,
            Op.JP: self._jump,
            Op.CALL: self._call_addr,
            Op.SE_BYTE: self._skip_if_eq,
            Op.SNE_BYTE: self._skip_if_not_eq,
            Op.SE_REG: self._skip_if_eq_regs,
            Op.LD_BYTE: self._set_vk,
            Op.ADD_BYTE: self._add_to_vk,
            Op.LD_REG: self._set_vx_to_vy,
            Op.OR: self._set_vx_or_vy,
            Op.AND: self._set_vx_and_vy,
            Op.XOR: self._set_vx_xor_vy,
            Op.ADD_REG: self._add_vx_vy,
            Op.SUB: self._sub_vx_vy,
            Op.SHR: self._shr,
            Op.SUBN: self._subn_vx_vy,
            Op.SHL: self._shl,
            Op.SNE_REG: self._skip_if_not_eq_regs,
            Op.LD_I: self._set_idx,
            Op.JP_V: self._jump_plus,
            Op.RND: self._random_byte_and,
            Op.DRW: self._to_screen,
            Op.SKP: self._skip_if_pressed,
            Op.SKNP: self._skip_if_not_pressed,
            Op.LD_VX_DT: self._set_vx_dt,
            Op.LD_VX_K: self._wait_keypress,
            Op.LD_DT_VX: self._set_dt_vx,
            Op.LD_ST_VX: self._set_st,
            Op.ADD_I: self._add_to_idx,
            Op.LD_F: self._select_char,
            Op.LD_B: self._bcd_repr,
            Op.LD_STORE: self._store_vregs,
            Op.LD_LOAD: self._load_vregs,
        }

    def reset(self):
        """bring every piece of state back to a freshly constructed machine, memory (fonts included) is zeroed"""
        self.mem.clear()
        self.stack.clear()
        self.display.clear()
        self.keypad.update([False] * KEY_COUNT)
        self.v_regs = [0] * 16
        self.pc = ROM_START_ADDRESS
        self.op_addr = ROM_START_ADDRESS   # address of the instruction being executed
        self.idx = 0    # specify where the sprites reside in memory
        self.dt = 0     # delay timer, active when non-zero
        self.st = 0     # sound timer, active when non-zero
        self.waiting_for_key = False

    def __str__(self):
        registers = " ".join(f"V{i:X}:0x{v:02x}" for i, v in enumerate(self.v_regs))
        pointers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | DT:{self.dt} | ST:{self.st}"
        stack = f"STACK:{self.stack}"
        keys = f"KEYPAD:{self.keypad}"
        return f"{pointers}\n{registers}\n{stack}\n{keys}"

    # ********** LOADING
    def load_font(self):
        self.mem.write(FONT_START_ADDRESS, C8_FONTS)

    def load_program(self, program):
        """
        copy a ROM image into memory starting at 0x200
        bytes that would land past the end of memory are dropped, the number of bytes written is returned
        """
        program = bytes(program)[:MEMORY_SIZE - ROM_START_ADDRESS]
        self.mem.write(ROM_START_ADDRESS, program)
        return len(program)

    def load(self, program):
        self.load_font()
        return self.load_program(program)

    # ********** HOST ACCESSORS
    def read_pixel(self, x, y):
        return self.display.read_pixel(x, y)

    def framebuffer(self):
        """32 rows of 64 booleans, True for a lit pixel"""
        return self.display.rows()

    @property
    def delay_timer(self):
        return self.dt

    @property
    def sound_timer(self):
        return self.st

    @property
    def sound_active(self):
        return self.st > 0

    # ********** INSTRUCTIONS
    @asm("SYS 0x{nnn:03x}")
    def _sys(self, ins):
        """native COSMAC VIP machine code routine, ignored"""
        log.debug("ignoring SYS call to 0x%03x", ins.nnn)

    @asm("SKP V{x:X}")
    def _skip_if_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        if self.keypad[self.v_regs[ins.x]]:
            self._goto_next_instruction()

    @asm("SKNP V{x:X}")
    def _skip_if_not_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        if not self.keypad[self.v_regs[ins.x]]:
            self._goto_next_instruction()

    @asm("LD V{x:X}, K")
    def _wait_keypress(self, ins):
        """wait for a key press and store its value in Vx"""
        if self.keypad.untouched():
            self.pc -= 0x2      # stay on the same instruction until a key is pressed
            self.waiting_for_key = True
        else:
            self.v_regs[ins.x] = self.keypad.first()

    @asm("LD V{x:X}, DT")
    def _set_vx_dt(self, ins):
        """set Vx = DT (delay timer) value"""
        self.v_regs[ins.x] = self.dt

    @asm("LD DT, V{x:X}")
    def _set_dt_vx(self, ins):
        """set DT (delay timer) = Vx"""
        self.dt = self.v_regs[ins.x]

    @asm("CLS")
    def _clear_screen(self, ins):
        self.display.clear()

    @asm("RET")
    def _return(self, ins):
        """return from a subroutine"""
        try:
            self.pc = self.stack.pop()
        except IndexError:
            raise StackUnderflowError(ins.word, self.op_addr) from None

    @asm("JP 0x{nnn:03x}")
    def _jump(self, ins):
        self.pc = ins.nnn

    @asm("CALL 0x{nnn:03x}")
    def _call_addr(self, ins):
        try:
            self.stack.append(self.pc)
        except IndexError:
            raise StackOverflowError(ins.word, self.op_addr) from None
        self.pc = ins.nnn

    @asm("SE V{x:X}, 0x{nn:02x}")
    def _skip_if_eq(self, ins):
        if self.v_regs[ins.x] == ins.nn:
            self._goto_next_instruction()

    @asm("SNE V{x:X}, 0x{nn:02x}")
    def _skip_if_not_eq(self, ins):
        if self.v_regs[ins.x] != ins.nn:
            self._goto_next_instruction()

    @asm("SE V{x:X}, V{y:X}")
    def _skip_if_eq_regs(self, ins):
        if self.v_regs[ins.x] == self.v_regs[ins.y]:
            self._goto_next_instruction()

    @asm("SNE V{x:X}, V{y:X}")
    def _skip_if_not_eq_regs(self, ins):
        if self.v_regs[ins.x] != self.v_regs[ins.y]:
            self._goto_next_instruction()

    @asm("LD V{x:X}, 0x{nn:02x}")
    def _set_vk(self, ins):
        """set the value of one of the 16 variable registers, Vx"""
        self.v_regs[ins.x] = ins.nn

    @asm("ADD V{x:X}, 0x{nn:02x}")
    def _add_to_vk(self, ins):
        """add to the value already present in one of the variable registers, VF is left alone"""
        self.v_regs[ins.x] = (self.v_regs[ins.x] + ins.nn) & 0xFF    # keep only the lowest 8 bits

    @asm("LD V{x:X}, V{y:X}")
    def _set_vx_to_vy(self, ins):
        """set the value of Vx equal to that of Vy"""
        self.v_regs[ins.x] = self.v_regs[ins.y]

    @asm("OR V{x:X}, V{y:X}")
    def _set_vx_or_vy(self, ins):
        """set the value of Vx to Vx OR Vy"""
        self.v_regs[ins.x] |= self.v_regs[ins.y]

    @asm("AND V{x:X}, V{y:X}")
    def _set_vx_and_vy(self, ins):
        """set the value of Vx to Vx AND Vy"""
        self.v_regs[ins.x] &= self.v_regs[ins.y]

    @asm("XOR V{x:X}, V{y:X}")
    def _set_vx_xor_vy(self, ins):
        """set the value of Vx to Vx XOR Vy"""
        self.v_regs[ins.x] ^= self.v_regs[ins.y]

    # the flag producing ALU instructions write VF after the result,
    # so when x is 0xF the flag is what survives in VF

    @asm("ADD V{x:X}, V{y:X}")
    def _add_vx_vy(self, ins):
        """set the value of Vx to Vx + Vy, VF = carry"""
        total = self.v_regs[ins.x] + self.v_regs[ins.y]
        self.v_regs[ins.x] = total & 0xFF
        self.v_regs[0xF] = 1 if total > 0xFF else 0

    @asm("SUB V{x:X}, V{y:X}")
    def _sub_vx_vy(self, ins):
        """set the value of Vx to Vx - Vy, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vx - vy) & 0xFF
        self.v_regs[0xF] = 1 if vx >= vy else 0

    @asm("SUBN V{x:X}, V{y:X}")
    def _subn_vx_vy(self, ins):
        """set the value of Vx to Vy - Vx, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vy - vx) & 0xFF
        self.v_regs[0xF] = 1 if vy >= vx else 0

    @asm("SHR V{x:X}, V{y:X}")
    def _shr(self, ins):
        """set Vx equal to Vy SHR 1, VF = the bit shifted out"""
        value = self.v_regs[ins.y]      # compatibility quirk 2
        lsb = value & 0x1
        self.v_regs[ins.x] = value >> 1
        self.v_regs[0xF] = lsb

    @asm("SHL V{x:X}, V{y:X}")
    def _shl(self, ins):
        """set Vx equal to Vy SHL 1, VF = the bit shifted out"""
        value = self.v_regs[ins.y]      # compatibility quirk 2
        msb = (value & 0x80) >> 7
        self.v_regs[ins.x] = (value << 1) & 0xFF
        self.v_regs[0xF] = msb

    @asm("LD I, 0x{nnn:03x}")
    def _set_idx(self, ins):
        """set the value of the I register"""
        self.idx = ins.nnn

    @asm("JP V{x:X}, 0x{nnn:03x}")
    def _jump_plus(self, ins):
        # BXNN variant, the register is the one named by the second nibble
        self.pc = ins.nnn + self.v_regs[ins.x]

    @asm("RND V{x:X}, 0x{nn:02x}")
    def _random_byte_and(self, ins):
        rnd = self.rng.randint(0, 255)
        self.v_regs[ins.x] = rnd & ins.nn

    @asm("LD ST, V{x:X}")
    def _set_st(self, ins):
        """set ST = Vx"""
        self.st = self.v_regs[ins.x]

    @asm("ADD I, V{x:X}")
    def _add_to_idx(self, ins):
        """set I = I + Vx, VF = 1 when I leaves the 12 bit address space, untouched otherwise"""
        self.idx = (self.idx + self.v_regs[ins.x]) & 0xFFFF
        if self.idx > MAX_ADDRESS:
            self.v_regs[0xF] = 1

    @asm("LD F, V{x:X}")
    def _select_char(self, ins):
        """set I to location of sprite for digit Vx"""
        digit = self.v_regs[ins.x] & 0xF
        self.idx = FONT_START_ADDRESS + digit * FONT_GLYPH_SIZE

    @asm("LD B, V{x:X}")
    def _bcd_repr(self, ins):
        """takes the decimal value of Vx and the hundreds digit in memory at I, the tens digit at I+1, the ones digit at I+2"""
        value = self.v_regs[ins.x]
        self.mem.write(self.idx, (value // 100, value // 10 % 10, value % 10))

    @asm("LD [I], V{x:X}")
    def _store_vregs(self, ins):
        """store registers V0 through Vx (included) in memory starting at location I"""
        self.mem.write(self.idx, self.v_regs[:ins.x + 1])

    @asm("LD V{x:X}, [I]")
    def _load_vregs(self, ins):
        """read registers V0 through Vx (included) from memory starting at location I"""
        self.v_regs[:ins.x + 1] = self.mem.read(self.idx, ins.x + 1)

    @asm("DRW V{x:X}, V{y:X}, {n}")
    def _to_screen(self, ins):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x = self.v_regs[ins.x] % self.display.w
        y = self.v_regs[ins.y] % self.display.h
        # rows past the bottom edge are clipped, not wrapped, and never read
        # the sprite is read before VF or any pixel changes
        rows = min(ins.n, self.display.h - y)
        sprite = self.mem.read(self.idx, rows) if rows else b""
        self.v_regs[0xF] = 0
        # step through each sprite byte, one row each
        for i, sprite_byte in enumerate(sprite):
            y_coordinate = y + i
            for j in range(8):
                x_coordinate = x + j
                if x_coordinate >= self.display.w:
                    break
                # sprites are XORed onto the existing screen and if this
                # causes any pixel to be erased then VF=1
                if sprite_byte & (0x80 >> j) and self.display.xor_pixel(x_coordinate, y_coordinate):
                    self.v_regs[0xF] = 1

    # ********** CYCLE
    def _goto_next_instruction(self):
        self.pc += 0x2

    def fetch(self):
        """read the two bytes long instruction at PC and move PC past it"""
        opcode = self.mem[self.pc] << 8 | self.mem[self.pc + 1]
        self._goto_next_instruction()
        return opcode

    def step(self):
        """emulate one machine cycle (fetch, decode, execute) and return the executed Instruction"""
        self.op_addr = self.pc
        opcode = self.fetch()
        instruction = decode(opcode, self.op_addr)
        self.waiting_for_key = False
        try:
            self.instructions[instruction.op](instruction)
        except MemoryAccessError as err:
            raise ExecutionError(opcode, self.op_addr, str(err)) from err
        return instruction

    def tick_timers(self):
        """decrement delay and sound timers, meant to be called at 60Hz"""
        if self.dt > 0:
            self.dt -= 1
        if self.st > 0:
            self.st -= 1
