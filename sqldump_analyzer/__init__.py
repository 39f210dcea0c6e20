"""SQL Server Dump Analyzer package.

This package extracts diagnostic facts from SQL Server memory dumps:
- Minidump stream parsing (threads, modules, unloaded modules, comments)
- Process command line, environment block and instance name from the PEB
- Enabled trace flags and hardware strings from sqlmin globals
- Symbolized thread stacks with known third-party agent detection
"""
from .backend import DebugBackend, MinidumpBackend
from .classification import KNOWN_BAD_MODULES, ModuleClassifier
from .config import AnalyzerSettings
from .core import (
    DumpLoadedModuleInfo,
    DumpSession,
    DumpThreadInfo,
    DumpUnloadedModuleInfo,
    LazyCache,
    generate_report,
)
from .dump_extractor import (
    MinidumpContents,
    MinidumpDirectory,
    MinidumpHeader,
    MinidumpModule,
    MinidumpReader,
    MinidumpStreamType,
    MinidumpThread,
    MinidumpUnloadedModule,
)
from .errors import (
    BackendError,
    DecodeNotImplementedError,
    DumpAnalyzerError,
    FormatError,
    InvalidData,
    NotAccessible,
)
from .memory_interpreter import NtUnicodeString
from .symbol_resolver import ModuleSymbolInfo, SymbolInfo, SymbolResolver

__all__ = [
    # Session
    "DumpSession",
    "DumpThreadInfo",
    "DumpLoadedModuleInfo",
    "DumpUnloadedModuleInfo",
    "LazyCache",
    "generate_report",
    "AnalyzerSettings",
    # Backend
    "DebugBackend",
    "MinidumpBackend",
    "SymbolResolver",
    "SymbolInfo",
    "ModuleSymbolInfo",
    # Minidump records
    "MinidumpReader",
    "MinidumpContents",
    "MinidumpHeader",
    "MinidumpDirectory",
    "MinidumpStreamType",
    "MinidumpThread",
    "MinidumpModule",
    "MinidumpUnloadedModule",
    "NtUnicodeString",
    # Classification
    "KNOWN_BAD_MODULES",
    "ModuleClassifier",
    # Errors
    "DumpAnalyzerError",
    "FormatError",
    "BackendError",
    "NotAccessible",
    "InvalidData",
    "DecodeNotImplementedError",
]

__version__ = "1.0.0"
