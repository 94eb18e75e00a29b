"""
chip8core - CHIP-8 virtual machine core.

The decode/execute engine and the machine state it mutates: 4KB memory,
V0-VF registers, index register, program counter, a 16-level call stack,
delay/sound timers, a 64x32 framebuffer and a 16-key input state.

Hosts drive the machine by calling ``Chip8CPU.cycle()`` once per tick,
writing key state before each cycle and reading the framebuffer after it.
Faults (unknown opcodes, stack over/underflow, out-of-range memory access)
are raised as ``Chip8Error`` subclasses without touching machine state, so
the host decides whether to halt, skip or retry.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, Dict, Iterable, List, Optional

import numpy as np

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════════════

DISPLAY_W, DISPLAY_H = 64, 32          # Native resolution
DISPLAY_SIZE = DISPLAY_W * DISPLAY_H    # 2048 pixels, row-major

MEMORY_SIZE = 4096                      # 4KB RAM
PROGRAM_START = 0x200                   # Programs load at 0x200
MAX_PROGRAM_SIZE = MEMORY_SIZE - PROGRAM_START
STACK_SIZE = 16                         # 16-level stack
NUM_REGISTERS = 16                      # V0-VF
NUM_KEYS = 16                           # 16 hex keys
FLAG = 0xF                              # VF doubles as carry/borrow/collision

# Hex digit glyphs 0-F (4x5 pixels, 5 bytes each), stored at 0x000-0x04F
FONTSET = [
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
]

# Behaviour switches for the ambiguous corners of the instruction set
DEFAULT_QUIRKS = {
    'shl_raw_flag': True,           # 8XYE: VF = VY & 0x80 instead of VY >> 7
    'jump_mask_precedence': False,  # BNNN: opcode & (0xFFF + V0) instead of NNN + V0
    'clip_sprites': False,          # DXYN: drop off-screen pixels instead of wrapping
}


# ═══════════════════════════════════════════════════════════════════════════════
# ERRORS
# ═══════════════════════════════════════════════════════════════════════════════

class Chip8Error(Exception):
    """Base class for faults raised by the execute loop"""

    def __init__(self, message: str, address: int, opcode: Optional[int] = None):
        self.address = address
        self.opcode = opcode
        where = f"${address:03X}"
        if opcode is not None:
            where += f" [{opcode:04X}]"
        super().__init__(f"{message} at {where}")


class UnknownOpcodeError(Chip8Error):
    """Instruction word matches no known instruction"""

    def __init__(self, address: int, opcode: int):
        super().__init__("Unknown opcode", address, opcode)


class StackOverflowError(Chip8Error):
    """CALL with all 16 stack slots in use"""

    def __init__(self, address: int, opcode: int):
        super().__init__("Stack overflow", address, opcode)


class StackUnderflowError(Chip8Error):
    """RET with an empty stack"""

    def __init__(self, address: int, opcode: int):
        super().__init__("Stack underflow", address, opcode)


class MemoryAccessError(Chip8Error):
    """Fetch or sprite read outside of the 4KB address space"""

    def __init__(self, address: int, target: int, opcode: Optional[int] = None):
        self.target = target
        super().__init__(f"Memory access out of range (${target:04X})", address, opcode)


# ═══════════════════════════════════════════════════════════════════════════════
# MACHINE STATE
# ═══════════════════════════════════════════════════════════════════════════════

class WaitState(Enum):
    """Blocking-wait sub-state used by FX0A"""
    RUNNING = 0
    AWAITING_KEY = 1


@dataclass
class CPUState:
    """CHIP-8 machine state container"""
    # Memory
    memory: bytearray = field(default_factory=lambda: bytearray(MEMORY_SIZE))

    # Registers
    V: List[int] = field(default_factory=lambda: [0] * NUM_REGISTERS)  # V0-VF
    I: int = 0              # Index register
    PC: int = PROGRAM_START # Program counter
    SP: int = 0             # Next free stack slot

    # Stack of call-site addresses
    stack: List[int] = field(default_factory=lambda: [0] * STACK_SIZE)

    # Timers (one tick per executed instruction)
    delay_timer: int = 0
    sound_timer: int = 0

    # Display (64x32, row-major, one byte per pixel)
    gfx: np.ndarray = field(default_factory=lambda: np.zeros(DISPLAY_SIZE, dtype=np.uint8))

    # Keypad state
    keys: List[bool] = field(default_factory=lambda: [False] * NUM_KEYS)

    # Wait for key state
    wait_state: WaitState = WaitState.RUNNING
    key_register: int = 0


# ═══════════════════════════════════════════════════════════════════════════════
# CPU CORE
# ═══════════════════════════════════════════════════════════════════════════════

class Chip8CPU:
    """CHIP-8 fetch/decode/execute engine"""

    def __init__(self, quirks: Optional[Dict[str, bool]] = None):
        self.quirks = dict(DEFAULT_QUIRKS)
        if quirks:
            unknown = set(quirks) - set(DEFAULT_QUIRKS)
            if unknown:
                raise ValueError(f"Unknown quirk(s): {', '.join(sorted(unknown))}")
            self.quirks.update(quirks)

        self.state = CPUState()
        self.draw_flag = False
        self._load_fontset()

    def _load_fontset(self):
        self.state.memory[:len(FONTSET)] = bytes(FONTSET)

    def reset(self):
        """Reset machine to its power-on state"""
        self.state = CPUState()
        self._load_fontset()
        self.draw_flag = True

    # ─── Loader ───

    def load_rom(self, data: bytes) -> int:
        """Reset and copy a program image to 0x200, returning its length"""
        if len(data) > MAX_PROGRAM_SIZE:
            raise ValueError(
                f"ROM too large: {len(data)} bytes, max {MAX_PROGRAM_SIZE}")

        self.reset()
        self.state.memory[PROGRAM_START:PROGRAM_START + len(data)] = data
        logger.info("Loaded %d bytes at $%03X", len(data), PROGRAM_START)
        return len(data)

    def load_rom_stream(self, stream: BinaryIO) -> int:
        """Load a program image from a binary file-like object"""
        return self.load_rom(stream.read())

    def load_rom_file(self, filepath) -> int:
        """Load a program image from disk"""
        with open(filepath, 'rb') as f:
            return self.load_rom_stream(f)

    # ─── Host interface ───

    @property
    def framebuffer(self) -> np.ndarray:
        """Read-only view of the 2048-pixel row-major framebuffer"""
        view = self.state.gfx.view()
        view.flags.writeable = False
        return view

    def display(self) -> np.ndarray:
        """Framebuffer as a read-only (height, width) array"""
        return self.framebuffer.reshape(DISPLAY_H, DISPLAY_W)

    @property
    def delay_timer(self) -> int:
        return self.state.delay_timer

    @property
    def sound_timer(self) -> int:
        return self.state.sound_timer

    @property
    def sound_active(self) -> bool:
        """True while the sound timer is counting down"""
        return self.state.sound_timer > 0

    @property
    def awaiting_key(self) -> bool:
        return self.state.wait_state is WaitState.AWAITING_KEY

    def key_down(self, key: int):
        """Handle key press"""
        self.state.keys[self._check_key(key)] = True

    def key_up(self, key: int):
        """Handle key release"""
        self.state.keys[self._check_key(key)] = False

    def set_keys(self, pressed: Iterable[int]):
        """Replace the whole keypad state with the given pressed keys"""
        keys = [False] * NUM_KEYS
        for key in pressed:
            keys[self._check_key(key)] = True
        self.state.keys = keys

    @staticmethod
    def _check_key(key: int) -> int:
        if not 0 <= key < NUM_KEYS:
            raise IndexError(f"Key out of range: {key}")
        return key

    # ─── Execution ───

    def fetch(self) -> int:
        """Read the 16-bit opcode at PC without advancing"""
        pc = self.state.PC
        if not 0 <= pc < MEMORY_SIZE - 1:
            raise MemoryAccessError(pc, pc + 1 if pc == MEMORY_SIZE - 1 else pc)
        return (self.state.memory[pc] << 8) | self.state.memory[pc + 1]

    def cycle(self):
        """Execute one instruction, then tick the timers.

        Raises a Chip8Error subclass, leaving state untouched, when the
        instruction cannot be executed.
        """
        opcode = self.fetch()
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("$%03X  %04X  %s", self.state.PC, opcode, disassemble(opcode))
        self.execute(opcode)
        self.update_timers()

    def run(self, cycles: int) -> int:
        """Execute ``cycles`` cycles back to back; faults propagate"""
        for _ in range(cycles):
            self.cycle()
        return cycles

    def skip_instruction(self):
        """Step PC past the current instruction (used to recover from faults)"""
        self.state.PC += 2
        self.state.wait_state = WaitState.RUNNING

    def update_timers(self):
        """Decrement timers unless blocked on a key"""
        s = self.state
        if s.wait_state is WaitState.AWAITING_KEY:
            return

        if s.delay_timer > 0:
            s.delay_timer -= 1

        if s.sound_timer > 0:
            s.sound_timer -= 1

    def execute(self, opcode: int):
        """Decode and execute a single opcode"""
        # Extract common opcode parts
        nnn = opcode & 0x0FFF        # 12-bit address
        nn = opcode & 0x00FF         # 8-bit constant
        n = opcode & 0x000F          # 4-bit constant
        x = (opcode >> 8) & 0x0F     # 4-bit register index
        y = (opcode >> 4) & 0x0F     # 4-bit register index

        op = (opcode >> 12) & 0xF    # First nibble

        s = self.state
        V = s.V

        # ─── 0x0XXX ───
        if op == 0x0:
            if opcode == 0x00E0:
                # 00E0: CLS
                s.gfx.fill(0)
                self.draw_flag = True
                s.PC += 2

            elif opcode == 0x00EE:
                # 00EE: RET - stack holds the call site, so step past it
                if s.SP == 0:
                    raise StackUnderflowError(s.PC, opcode)
                s.SP -= 1
                s.PC = s.stack[s.SP] + 2

            else:
                raise UnknownOpcodeError(s.PC, opcode)

        # ─── 1NNN: JP addr ───
        elif op == 0x1:
            s.PC = nnn

        # ─── 2NNN: CALL addr ───
        elif op == 0x2:
            if s.SP >= STACK_SIZE:
                raise StackOverflowError(s.PC, opcode)
            s.stack[s.SP] = s.PC
            s.SP += 1
            s.PC = nnn

        # ─── 3XNN: SE Vx, byte ───
        elif op == 0x3:
            s.PC += 4 if V[x] == nn else 2

        # ─── 4XNN: SNE Vx, byte ───
        elif op == 0x4:
            s.PC += 4 if V[x] != nn else 2

        # ─── 5XY0: SE Vx, Vy ───
        elif op == 0x5:
            if n != 0:
                raise UnknownOpcodeError(s.PC, opcode)
            s.PC += 4 if V[x] == V[y] else 2

        # ─── 6XNN: LD Vx, byte ───
        elif op == 0x6:
            V[x] = nn
            s.PC += 2

        # ─── 7XNN: ADD Vx, byte (no carry) ───
        elif op == 0x7:
            V[x] = (V[x] + nn) & 0xFF
            s.PC += 2

        # ─── 8XYZ: ALU operations ───
        elif op == 0x8:
            self._execute_alu(opcode, x, y, n)

        # ─── 9XY0: SNE Vx, Vy ───
        elif op == 0x9:
            if n != 0:
                raise UnknownOpcodeError(s.PC, opcode)
            s.PC += 4 if V[x] != V[y] else 2

        # ─── ANNN: LD I, addr ───
        elif op == 0xA:
            s.I = nnn
            s.PC += 2

        # ─── BNNN: JP V0, addr ───
        elif op == 0xB:
            if self.quirks['jump_mask_precedence']:
                s.PC = opcode & (0x0FFF + V[0])
            else:
                s.PC = nnn + V[0]

        # ─── DXYN: DRW Vx, Vy, nibble ───
        elif op == 0xD:
            self._draw_sprite(V[x], V[y], n, opcode)
            s.PC += 2

        # ─── FX07 / FX0A ───
        elif op == 0xF:
            if nn == 0x07:
                # FX07: LD Vx, DT
                V[x] = s.delay_timer
                s.PC += 2

            elif nn == 0x0A:
                # FX0A: LD Vx, K - PC stays put until a key is down
                self._wait_for_key(x)

            else:
                raise UnknownOpcodeError(s.PC, opcode)

        else:
            raise UnknownOpcodeError(s.PC, opcode)

    def _execute_alu(self, opcode: int, x: int, y: int, z: int):
        """8XYZ register arithmetic; VF is written after the result"""
        s = self.state
        V = s.V

        if z not in (0x0, 0x1, 0x2, 0x3, 0x4, 0x5, 0x6, 0x7, 0xE):
            raise UnknownOpcodeError(s.PC, opcode)

        s.PC += 2

        if z == 0x0:
            # 8XY0: LD Vx, Vy
            V[x] = V[y]

        elif z == 0x1:
            # 8XY1: OR Vx, Vy
            V[x] |= V[y]

        elif z == 0x2:
            # 8XY2: AND Vx, Vy
            V[x] &= V[y]

        elif z == 0x3:
            # 8XY3: XOR Vx, Vy
            V[x] ^= V[y]

        elif z == 0x4:
            # 8XY4: ADD Vx, Vy (VF = carry)
            result = V[x] + V[y]
            V[x] = result & 0xFF
            V[FLAG] = 1 if result > 0xFF else 0

        elif z == 0x5:
            # 8XY5: SUB Vx, Vy (VF = NOT borrow)
            no_borrow = V[x] >= V[y]
            V[x] = (V[x] - V[y]) & 0xFF
            V[FLAG] = 1 if no_borrow else 0

        elif z == 0x6:
            # 8XY6: SHR - shifts VY in place and copies it to VX
            V[FLAG] = V[y] & 0x1
            V[y] >>= 1
            V[x] = V[y]

        elif z == 0x7:
            # 8XY7: SUBN Vx, Vy (VF set on strictly greater)
            V[FLAG] = 1 if V[y] > V[x] else 0
            V[x] = (V[y] - V[x]) & 0xFF

        elif z == 0xE:
            # 8XYE: SHL - shifts VY in place and copies it to VX
            if self.quirks['shl_raw_flag']:
                V[FLAG] = V[y] & 0x80
            else:
                V[FLAG] = (V[y] >> 7) & 0x1
            V[y] = (V[y] << 1) & 0xFF
            V[x] = V[y]

    def _draw_sprite(self, x: int, y: int, height: int, opcode: int):
        """Overwrite an 8xN sprite at (x, y), setting VF on collision"""
        s = self.state
        end = s.I + height
        if height and end > MEMORY_SIZE:
            raise MemoryAccessError(s.PC, end - 1, opcode)

        clip = self.quirks['clip_sprites']
        gfx = s.gfx
        s.V[FLAG] = 0

        for row in range(height):
            py = y + row
            if py >= DISPLAY_H:
                if clip:
                    break
                py %= DISPLAY_H

            sprite_byte = s.memory[s.I + row]

            for col in range(8):
                px = x + col
                if px >= DISPLAY_W:
                    if clip:
                        break
                    px %= DISPLAY_W

                pixel = 1 if sprite_byte & (0x80 >> col) else 0
                pos = py * DISPLAY_W + px

                if pixel and gfx[pos]:
                    s.V[FLAG] = 1  # Collision

                gfx[pos] = pixel

        self.draw_flag = True

    def _wait_for_key(self, x: int):
        s = self.state
        for i, pressed in enumerate(s.keys):
            if pressed:
                s.V[x] = i
                s.wait_state = WaitState.RUNNING
                s.PC += 2
                return

        if s.wait_state is not WaitState.AWAITING_KEY:
            logger.debug("Waiting for key into V%X", x)
        s.wait_state = WaitState.AWAITING_KEY
        s.key_register = x


# ═══════════════════════════════════════════════════════════════════════════════
# DISASSEMBLER
# ═══════════════════════════════════════════════════════════════════════════════

ALU_MNEMONICS = {0x0: "LD", 0x1: "OR", 0x2: "AND", 0x3: "XOR", 0x4: "ADD",
                 0x5: "SUB", 0x6: "SHR", 0x7: "SUBN", 0xE: "SHL"}


def disassemble(opcode: int) -> str:
    """Disassemble opcode to human-readable string"""
    nnn = opcode & 0x0FFF
    nn = opcode & 0x00FF
    n = opcode & 0x000F
    x = (opcode >> 8) & 0x0F
    y = (opcode >> 4) & 0x0F
    op = (opcode >> 12) & 0xF

    if opcode == 0x00E0:
        return "CLS"
    elif opcode == 0x00EE:
        return "RET"
    elif op == 0x1:
        return f"JP ${nnn:03X}"
    elif op == 0x2:
        return f"CALL ${nnn:03X}"
    elif op == 0x3:
        return f"SE V{x:X}, ${nn:02X}"
    elif op == 0x4:
        return f"SNE V{x:X}, ${nn:02X}"
    elif op == 0x5 and n == 0:
        return f"SE V{x:X}, V{y:X}"
    elif op == 0x6:
        return f"LD V{x:X}, ${nn:02X}"
    elif op == 0x7:
        return f"ADD V{x:X}, ${nn:02X}"
    elif op == 0x8 and n in ALU_MNEMONICS:
        return f"{ALU_MNEMONICS[n]} V{x:X}, V{y:X}"
    elif op == 0x9 and n == 0:
        return f"SNE V{x:X}, V{y:X}"
    elif op == 0xA:
        return f"LD I, ${nnn:03X}"
    elif op == 0xB:
        return f"JP V0, ${nnn:03X}"
    elif op == 0xD:
        return f"DRW V{x:X}, V{y:X}, {n}"
    elif op == 0xF and nn == 0x07:
        return f"LD V{x:X}, DT"
    elif op == 0xF and nn == 0x0A:
        return f"LD V{x:X}, K"
    return f"??? ${opcode:04X}"
