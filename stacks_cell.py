#!/usr/bin/env python3
# stacks_cell.py
#
# Cellule de la VM Stacks :
# - une seule étiquette active (CellTag) + un entier de charge utile
# - valeur immuable, copiée telle quelle entre heap et piles
#
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum


class CellTag(Enum):
    THREAD      = "Thread"
    PRIMITIVE   = "Primitive"
    LITERAL     = "Literal"
    BRANCH      = "Branch"
    ZERO_BRANCH = "ZeroBranch"
    VARIABLE    = "Variable"
    CONSTANT    = "Constant"


@dataclass(frozen=True)
class Cell:
    """
    Unit of storage in the heap and on both stacks.

    ``value`` is the tag's payload: a heap index for THREAD / BRANCH /
    ZERO_BRANCH / VARIABLE, a primitive-table index for PRIMITIVE, an
    integer for LITERAL / CONSTANT.
    """
    tag: CellTag
    value: int

    def __repr__(self) -> str:
        return f"{self.tag.value}({self.value})"

    def is_literal(self) -> bool: return self.tag is CellTag.LITERAL
    def is_thread(self) -> bool: return self.tag is CellTag.THREAD

    def describe(self) -> str:
        """Console rendering: literals print bare, everything else as Tag(payload)."""
        if self.tag is CellTag.LITERAL:
            return str(self.value)
        return repr(self)

    # constructors
    @staticmethod
    def thread(index: int) -> "Cell": return Cell(CellTag.THREAD, index)
    @staticmethod
    def primitive(num: int) -> "Cell": return Cell(CellTag.PRIMITIVE, num)
    @staticmethod
    def literal(value: int) -> "Cell": return Cell(CellTag.LITERAL, value)
    @staticmethod
    def branch(dest: int) -> "Cell": return Cell(CellTag.BRANCH, dest)
    @staticmethod
    def zero_branch(dest: int) -> "Cell": return Cell(CellTag.ZERO_BRANCH, dest)
    @staticmethod
    def variable(address: int) -> "Cell": return Cell(CellTag.VARIABLE, address)
    @staticmethod
    def constant(value: int) -> "Cell": return Cell(CellTag.CONSTANT, value)
