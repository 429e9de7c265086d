"""Emulator for the HP C2089A PostScript cartridge: runs its firmware and captures rendered pages."""

__version__ = "0.1.0"