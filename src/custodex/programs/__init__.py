"""On-chain program interfaces."""

from custodex.programs.instructions import (
    DecodedInstruction,
    Opcode,
    ProgramIds,
    decode_instruction,
)

__all__ = ["DecodedInstruction", "Opcode", "ProgramIds", "decode_instruction"]
