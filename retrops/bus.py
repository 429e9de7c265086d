"""Flat 24-bit address bus: cartridge ROM, work RAM and the low-memory trap page."""

from __future__ import annotations

ROM_BASE = 0x0040_0000
ROM_SIZE = 0x0020_0000
RAM_BASE = 0x00B0_0000
RAM_SIZE = 0x0800_0000
LOW_SIZE = 0x0000_1000

RTS_OPCODE = 0x4E75

_MASK32 = 0xFFFF_FFFF


def _in_rom(addr: int) -> bool:
    return ROM_BASE <= addr < ROM_BASE + ROM_SIZE


def _in_ram(addr: int) -> bool:
    return RAM_BASE <= addr < RAM_BASE + RAM_SIZE


def _in_low(addr: int) -> bool:
    return addr < LOW_SIZE


class Bus:
    """Big-endian memory map the cart firmware runs against.

    Unmapped reads return 0xFF and unmapped writes are dropped. The ROM
    region is writable so that patches applied at run time stick.
    """

    def __init__(self, rom: bytes) -> None:
        if len(rom) != ROM_SIZE:
            raise ValueError(
                f"ROM size mismatch ({len(rom)} bytes, expected {ROM_SIZE})"
            )
        self.rom = bytearray(rom)
        self.ram = bytearray(RAM_SIZE)
        # Pre-filled with RTS so jumps into unhooked soft-trap entries return.
        self.low = bytearray(RTS_OPCODE.to_bytes(2, "big") * (LOW_SIZE // 2))

    def read_byte(self, addr: int) -> int:
        addr &= _MASK32
        if _in_rom(addr):
            return self.rom[addr - ROM_BASE]
        if _in_ram(addr):
            return self.ram[addr - RAM_BASE]
        if _in_low(addr):
            return self.low[addr]
        return 0xFF

    def read_word(self, addr: int) -> int:
        return (self.read_byte(addr) << 8) | self.read_byte((addr + 1) & _MASK32)

    def read_long(self, addr: int) -> int:
        return (self.read_word(addr) << 16) | self.read_word((addr + 2) & _MASK32)

    def write_byte(self, addr: int, value: int) -> None:
        addr &= _MASK32
        value &= 0xFF
        if _in_ram(addr):
            self.ram[addr - RAM_BASE] = value
        elif _in_rom(addr):
            self.rom[addr - ROM_BASE] = value
        elif _in_low(addr):
            self.low[addr] = value

    def write_word(self, addr: int, value: int) -> None:
        value &= 0xFFFF
        self.write_byte(addr, value >> 8)
        self.write_byte((addr + 1) & _MASK32, value & 0xFF)

    def write_long(self, addr: int, value: int) -> None:
        value &= _MASK32
        self.write_word(addr, value >> 16)
        self.write_word((addr + 2) & _MASK32, value & 0xFFFF)