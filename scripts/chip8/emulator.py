import argparse
import logging
import os
import sys
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_1, K_2, K_3, K_4,
    K_q, K_w, K_e, K_r,
    K_a, K_s, K_d, K_f,
    K_z, K_x, K_c, K_v,
)

from chip8 import SCREEN_HEIGHT, SCREEN_WIDTH, Chip8, Chip8Error, RomLoadError


log = logging.getLogger(__name__)


# ******************** STATIC SECTION
# the usual QWERTY layout of the COSMAC VIP hex keypad
#   1 2 3 C        1 2 3 4
#   4 5 6 D   <-   Q W E R
#   7 8 9 E        A S D F
#   A 0 B F        Z X C V
# position in the tuple is the CHIP-8 key index
KEYPAD_LAYOUT = (
    K_x,                    # 0
    K_1, K_2, K_3,          # 1 2 3
    K_q, K_w, K_e,          # 4 5 6
    K_a, K_s, K_d,          # 7 8 9
    K_z, K_c,               # A B
    K_4, K_r, K_f, K_v,     # C D E F
)

DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False
SCALE = 16
CYCLES_PER_FRAME = 16       # ~960 instructions per second at 60 frames
FPS = 60
BLUE = pygame.Color(80,69,155,255)
LIGHT_BLUE = pygame.Color(136,126,203,255)


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLUE, fg_color=LIGHT_BLUE):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def read_pixel(self, x, y):
        """return 1 if pixel is ON, return 0 if pixel is OFF"""
        p = self.surface.get_at((x * self.scale, y * self.scale))
        return 0 if p == self.background else 1

    def render(self, framebuffer):
        """paint the whole framebuffer, there is no dirty tracking so every frame is drawn from scratch"""
        self.surface.fill(self.background)
        for y, row in enumerate(framebuffer):
            for x, lit in enumerate(row):
                if lit:
                    pygame.draw.rect(
                        self.surface,
                        self.foreground,
                        (x * self.scale, y * self.scale, self.scale, self.scale)
                    )
        pygame.display.flip()


def poll_keys(pressed):
    """
    turn the host keyboard state into the 16 CHIP-8 key flags
    pressed is anything indexable by pygame key constants, usually pygame.key.get_pressed()
    """
    return [bool(pressed[k]) for k in KEYPAD_LAYOUT]


def load_rom(chip, path):
    """load ROM file from user specified path, raise RomLoadError if it can't be used"""
    try:
        with open(path, mode='rb') as f:
            rom = f.read()
    except OSError as err:
        raise RomLoadError(f"cannot read the ROM at path {path}: {err.strerror}") from err
    if not rom:
        raise RomLoadError(f"the ROM at path {path} is empty")
    written = chip.load(rom)
    if written < len(rom):
        log.warning("The ROM at path %s is %d bytes long, only the first %d fit in memory", path, len(rom), written)
    log.info("The ROM at path %s has been loaded successfully", path)
    return written


def run_frame(chip, keys, cycles=CYCLES_PER_FRAME):
    """feed the keypad snapshot, run a batch of cycles and tick the timers once"""
    chip.keypad.update(keys)
    for _ in range(cycles):
        chip.step()
    chip.tick_timers()


def positive_int(value):
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return number


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("--scale", type=positive_int, default=SCALE, help="size in pixels of a CHIP-8 pixel")
    parser.add_argument("--cycles-per-frame", type=positive_int, default=CYCLES_PER_FRAME,
                        help="instructions executed between two timer ticks")
    parser.add_argument("--fps", type=positive_int, default=FPS, help="frames (and timer ticks) per second")
    return parser.parse_args(argv)


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if DEBUG else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
    )
    chip = Chip8()
    try:
        load_rom(chip, args.file)
    except RomLoadError as err:
        sys.exit(f"error: {err}")
    # pygame initialization
    pygame.init()
    try:
        pygame.display.set_caption(os.path.basename(args.file))
        clock = pygame.time.Clock()
        screen = Screen(s=args.scale)
        # emulation loop
        run = True
        while run:
            # frames per second
            clock.tick(args.fps)
            for event in pygame.event.get():
                if event.type == pygame.QUIT:
                    run = False
                elif event.type == pygame.KEYDOWN and event.key == pygame.K_ESCAPE:
                    run = False
            try:
                run_frame(chip, poll_keys(pygame.key.get_pressed()), args.cycles_per_frame)
            except Chip8Error as err:
                sys.exit(f"********** THE EMULATOR CRASHED WITH THE FOLLOWING STATE\n{err}\n{chip}")
            screen.render(chip.framebuffer())
    finally:
        pygame.quit()


if __name__ == "__main__":
    main()
