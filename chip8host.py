#!/usr/bin/env python3
"""
chip8host - pygame front end for the chip8core virtual machine.

Loads a ROM, paces ``Chip8CPU.cycle()`` at a fixed rate, feeds the QWERTY
keyboard into the hex keypad and renders the framebuffer with a phosphor
glow. Machine faults pause emulation and are reported in the status bar.

Controls:
    1234 / QWER / ASDF / ZXCV   hex keypad
    P                           pause / resume
    N                           skip the faulting instruction
    F2                          toggle register overlay
    ESC                         exit
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pygame

from chip8core import (DISPLAY_H, DISPLAY_W, MEMORY_SIZE, Chip8CPU, Chip8Error,
                       disassemble)

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════════
# CONSTANTS & CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

FPS = 60                                # Host frame rate
DEFAULT_CLOCK_HZ = 60                   # One instruction per 60Hz tick
DEFAULT_SCALE = 12                      # Display scale factor
STATUS_H = 25                           # Status bar height

GLOW_UPSCALE = 4                        # Internal upscale for glow blur
BLOOM_STRENGTH = 0.55                   # Glow intensity (0.0-1.0)
BLUR_RADIUS = 1                         # Extra box blur passes (0-3)

COLORS = {
    'bg_dark': (15, 15, 25),
    'status_bg': (20, 20, 35),
    'text': (200, 200, 200),
    'text_dim': (120, 120, 140),
    'fault': (255, 100, 150),
}

COLOR_SCHEMES = {
    'green': (0, 255, 128),
    'amber': (255, 176, 0),
    'white': (220, 220, 220),
    'blue': (100, 180, 255),
}

# Keyboard mapping (QWERTY -> hex keypad)
# Keypad:    Keyboard:
# 1 2 3 C    1 2 3 4
# 4 5 6 D    Q W E R
# 7 8 9 E    A S D F
# A 0 B F    Z X C V
KEY_MAP = {
    pygame.K_1: 0x1, pygame.K_2: 0x2, pygame.K_3: 0x3, pygame.K_4: 0xC,
    pygame.K_q: 0x4, pygame.K_w: 0x5, pygame.K_e: 0x6, pygame.K_r: 0xD,
    pygame.K_a: 0x7, pygame.K_s: 0x8, pygame.K_d: 0x9, pygame.K_f: 0xE,
    pygame.K_z: 0xA, pygame.K_x: 0x0, pygame.K_c: 0xB, pygame.K_v: 0xF,
}


@dataclass
class HostConfig:
    """Front end settings, built from the command line"""
    rom_path: Optional[str] = None
    clock_hz: int = DEFAULT_CLOCK_HZ
    scale: int = DEFAULT_SCALE
    color: str = 'green'
    show_debug: bool = False
    verbose: bool = False
    quirks: Dict[str, bool] = field(default_factory=dict)

    @property
    def cycles_per_frame(self) -> float:
        return self.clock_hz / FPS


# ═══════════════════════════════════════════════════════════════════════════════
# GLOW EFFECT SYSTEM
# ═══════════════════════════════════════════════════════════════════════════════

def colorize(mask: np.ndarray, color: Tuple[int, int, int]) -> np.ndarray:
    """Turn a (width, height) 0-1 mask into a (width, height, 3) RGB array"""
    rgb = np.asarray(mask, dtype=np.float32)[..., None] * np.asarray(color, dtype=np.float32)
    return np.clip(rgb, 0, 255).astype(np.uint8)


class GlowRenderer:
    """Phosphor glow/bloom post-processing effect"""

    def __init__(self, scale: int, fg_color: Tuple[int, int, int] = COLOR_SCHEMES['green'],
                 bg_color: Tuple[int, int, int] = COLORS['bg_dark']):
        self.fg_color = fg_color
        self.bg_color = bg_color
        self.bloom_strength = BLOOM_STRENGTH
        self.blur_radius = BLUR_RADIUS
        self.glow_upscale = GLOW_UPSCALE

        self.final_size = (DISPLAY_W * scale, DISPLAY_H * scale)

    @staticmethod
    def box_blur(arr: np.ndarray, passes: int = 1) -> np.ndarray:
        """Fast box blur using rolling averages"""
        a = arr.copy()
        for _ in range(passes):
            a = (np.roll(a, 1, axis=0) + a + np.roll(a, -1, axis=0)) / 3.0
            a = (np.roll(a, 1, axis=1) + a + np.roll(a, -1, axis=1)) / 3.0
        return a

    def glow_map(self, display: np.ndarray) -> np.ndarray:
        """Blurred (width, height) intensity halo for a (height, width) display"""
        base = np.asarray(display, dtype=np.float32).T
        block = np.ones((self.glow_upscale, self.glow_upscale), dtype=np.float32)
        glow = self.box_blur(np.kron(base, block), passes=1 + self.blur_radius)
        return np.clip(glow * self.bloom_strength, 0.0, 1.0)

    def render(self, display: np.ndarray) -> Tuple[pygame.Surface, pygame.Surface]:
        """Return (base_surface, glow_surface) scaled to the window"""
        base = np.asarray(display, dtype=np.float32).T

        base_surf = pygame.surfarray.make_surface(colorize(base, self.fg_color))
        glow_surf = pygame.surfarray.make_surface(colorize(self.glow_map(display), self.fg_color))

        return (pygame.transform.scale(base_surf, self.final_size),
                pygame.transform.smoothscale(glow_surf, self.final_size))

    def create_background(self) -> pygame.Surface:
        """CRT-style background with scanlines"""
        surf = pygame.Surface(self.final_size)
        surf.fill(self.bg_color)
        line = tuple(c + 5 for c in self.bg_color)
        for y in range(0, self.final_size[1], 2):
            pygame.draw.line(surf, line, (0, y), (self.final_size[0], y))
        return surf


# ═══════════════════════════════════════════════════════════════════════════════
# HOST APPLICATION
# ═══════════════════════════════════════════════════════════════════════════════

class Chip8Host:
    """Runs a Chip8CPU inside a pygame window"""

    def __init__(self, config: HostConfig):
        self.config = config
        self.cpu = Chip8CPU(quirks=config.quirks)

        pygame.init()
        pygame.display.set_caption("CHIP-8")
        width, height = DISPLAY_W * config.scale, DISPLAY_H * config.scale
        self.screen = pygame.display.set_mode((width, height + STATUS_H))
        self.status_rect = pygame.Rect(0, height, width, STATUS_H)
        self.clock = pygame.time.Clock()
        self.font = pygame.font.Font(None, 20)

        self.renderer = GlowRenderer(config.scale, COLOR_SCHEMES[config.color])
        self.background = self.renderer.create_background()

        self.running = True
        self.paused = False
        self.show_debug = config.show_debug
        self.fault: Optional[Chip8Error] = None
        self.status = "Ready"
        self._cycle_budget = 0.0

    def load(self, path: str) -> bool:
        """Load a ROM, reporting failures in the status bar"""
        try:
            size = self.cpu.load_rom_file(path)
        except (OSError, ValueError) as e:
            logger.error("Failed to load ROM %s: %s", path, e)
            self.status = f"Failed to load ROM: {e}"
            self.paused = True
            return False

        self.fault = None
        self.paused = False
        self.status = f"Loaded {path} ({size} bytes)"
        return True

    def _on_fault(self, error: Chip8Error):
        logger.error("%s", error)
        self.fault = error
        self.status = f"{error} - N=skip, P=retry"

    def _skip_fault(self):
        if self.fault is None:
            return
        logger.info("Skipping instruction at $%03X", self.fault.address)
        self.cpu.skip_instruction()
        self.fault = None
        self.status = "Running"

    def _toggle_pause(self):
        if self.fault is not None:
            self.fault = None
            self.paused = False
        else:
            self.paused = not self.paused
        self.status = "Paused" if self.paused else "Running"

    def handle_events(self):
        """Process window and keyboard events"""
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                self.running = False

            elif event.type == pygame.KEYDOWN:
                if event.key == pygame.K_ESCAPE:
                    self.running = False
                elif event.key == pygame.K_p:
                    self._toggle_pause()
                elif event.key == pygame.K_n:
                    self._skip_fault()
                elif event.key == pygame.K_F2:
                    self.show_debug = not self.show_debug
                elif event.key in KEY_MAP:
                    self.cpu.key_down(KEY_MAP[event.key])

            elif event.type == pygame.KEYUP:
                if event.key in KEY_MAP:
                    self.cpu.key_up(KEY_MAP[event.key])

    def update(self):
        """Run this frame's share of cycles"""
        if self.paused or self.fault is not None:
            return

        self._cycle_budget += self.config.cycles_per_frame
        steps = int(self._cycle_budget)
        self._cycle_budget -= steps

        for _ in range(steps):
            try:
                self.cpu.cycle()
            except Chip8Error as e:
                self._on_fault(e)
                break

    def render(self):
        self.screen.fill(COLORS['bg_dark'])
        self.screen.blit(self.background, (0, 0))

        base_surf, glow_surf = self.renderer.render(self.cpu.display())
        self.screen.blit(glow_surf, (0, 0), special_flags=pygame.BLEND_ADD)
        self.screen.blit(base_surf, (0, 0), special_flags=pygame.BLEND_ADD)
        self.cpu.draw_flag = False

        if self.show_debug:
            self._render_debug()

        pygame.draw.rect(self.screen, COLORS['status_bg'], self.status_rect)
        color = COLORS['fault'] if self.fault is not None else COLORS['text_dim']
        text = self.font.render(self.status, True, color)
        self.screen.blit(text, (10, self.status_rect.y + 5))

        pygame.display.flip()

    def _render_debug(self):
        """Register overlay"""
        overlay = pygame.Surface((210, 110), pygame.SRCALPHA)
        overlay.fill((0, 0, 0, 180))
        x = self.screen.get_width() - 215
        self.screen.blit(overlay, (x, 5))

        for i, line in enumerate(debug_lines(self.cpu)):
            text = self.font.render(line, True, self.renderer.fg_color)
            self.screen.blit(text, (x + 5, 10 + i * 18))

    def run(self):
        """Main loop"""
        try:
            while self.running:
                self.handle_events()
                self.update()
                self.render()
                self.clock.tick(FPS)
        finally:
            pygame.quit()


def debug_lines(cpu: Chip8CPU) -> List[str]:
    """Text lines describing the register file and the next instruction"""
    s = cpu.state
    lines = [
        f"PC: ${s.PC:03X}  I: ${s.I:03X}  SP: {s.SP}",
        f"DT: {s.delay_timer:02X}  ST: {s.sound_timer:02X}" + ("  KEY?" if cpu.awaiting_key else ""),
        "V0-V7: " + " ".join(f"{v:02X}" for v in s.V[:8]),
        "V8-VF: " + " ".join(f"{v:02X}" for v in s.V[8:]),
    ]
    if 0 <= s.PC < MEMORY_SIZE - 1:
        opcode = cpu.fetch()
        lines.append(f"OP: ${opcode:04X} {disassemble(opcode)}")
    return lines


# ═══════════════════════════════════════════════════════════════════════════════
# ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def parse_args(argv: Optional[List[str]] = None) -> HostConfig:
    parser = argparse.ArgumentParser(description="CHIP-8 virtual machine")
    parser.add_argument("rom", nargs="?", help="program image to load at $200")
    parser.add_argument("--hz", type=int, default=DEFAULT_CLOCK_HZ,
                        help="instructions per second (default: %(default)s)")
    parser.add_argument("--scale", type=int, default=DEFAULT_SCALE,
                        help="window pixels per display pixel (default: %(default)s)")
    parser.add_argument("--color", choices=sorted(COLOR_SCHEMES), default='green')
    parser.add_argument("--debug", action="store_true", help="show register overlay")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="log every executed instruction")
    parser.add_argument("--normalized-shift-flag", action="store_true",
                        help="8XYE sets VF to 0/1 instead of the raw top bit")
    parser.add_argument("--jump-mask-precedence", action="store_true",
                        help="BNNN jumps to opcode & ($FFF + V0)")
    parser.add_argument("--clip-sprites", action="store_true",
                        help="drop off-screen sprite pixels instead of wrapping")
    args = parser.parse_args(argv)

    if args.hz <= 0:
        parser.error("--hz must be positive")
    if args.scale <= 0:
        parser.error("--scale must be positive")

    return HostConfig(
        rom_path=args.rom,
        clock_hz=args.hz,
        scale=args.scale,
        color=args.color,
        show_debug=args.debug,
        verbose=args.verbose,
        quirks={
            'shl_raw_flag': not args.normalized_shift_flag,
            'jump_mask_precedence': args.jump_mask_precedence,
            'clip_sprites': args.clip_sprites,
        },
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    config = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    host = Chip8Host(config)
    if config.rom_path:
        if not host.load(config.rom_path):
            return 1
    else:
        logger.warning("No ROM given")
        host.paused = True
        host.status = "No ROM loaded - pass a .ch8 file on the command line"

    host.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
