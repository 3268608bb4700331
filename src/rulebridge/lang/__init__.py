"""Lexical layer shared by the declare parser, validator and reference engine."""

from rulebridge.lang.lexer import Token, tokenize
from rulebridge.lang.source import extract_package_name, is_blank, simple_name

__all__ = ["Token", "tokenize", "extract_package_name", "is_blank", "simple_name"]
