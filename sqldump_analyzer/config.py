"""
Configuration settings for the SQL Server dump analyzer.

Fixed symbol names and limits live here as module constants. Paths and
overridable values come from the environment (optionally seeded from a
.env file by the CLI).
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

# Dumps larger than this are memory-mapped instead of read into memory
MMAP_THRESHOLD = 100 * 1024 * 1024

# SQL Server symbols
TRACE_FLAG_SYMBOL = "sqlmin!g_rgUlTraceFlags"
# No public symbol gives the size of the trace flag table; 9000 bytes is
# well past any real data.
TRACE_FLAG_SCAN_LIMIT = 9000
SYSTEM_MANUFACTURER_SYMBOL = "sqlmin!HwInfo::sm_SystemManufacturer"
SYSTEM_PRODUCT_NAME_SYMBOL = "sqlmin!HwInfo::sm_SystemProductName"
HARDWARE_STRING_SIZE = 128

TARGET_EXECUTABLE = "sqlservr.exe"
THREAD_START_SYMBOL = "ntdll!RtlUserThreadStart"

# NT structures
PEB_TYPE = "ntdll!_PEB"
TEB_TYPE = "ntdll!_TEB"
PROCESS_PARAMETERS_TYPE = "ntdll!_RTL_USER_PROCESS_PARAMETERS"

# Field offsets for x64 Windows. Symbol maps can override any of these.
DEFAULT_TYPE_OFFSETS: Dict[str, Dict[str, int]] = {
    TEB_TYPE: {
        "ProcessEnvironmentBlock": 0x60,
    },
    PEB_TYPE: {
        "ProcessParameters": 0x20,
    },
    PROCESS_PARAMETERS_TYPE: {
        "CurrentDirectory": 0x38,
        "ImagePathName": 0x60,
        "CommandLine": 0x70,
        "Environment": 0x80,
        "EnvironmentSize": 0x3F0,
    },
}

# Stack walking
MAX_STACK_FRAMES = 256
CONTEXT_AMD64_RIP_OFFSET = 0xF8

# Suffix of symbol map files looked up on the symbols path, e.g. sqlmin.symbols.json
SYMBOL_MAP_SUFFIX = ".symbols.json"


def split_paths(value: str) -> List[Path]:
    return [Path(p) for p in value.split(os.pathsep) if p.strip()]


@dataclass
class AnalyzerSettings:
    """Runtime settings for a dump session."""
    symbols_path: List[Path] = field(default_factory=list)
    target_executable: str = TARGET_EXECUTABLE
    trace_flag_limit: int = TRACE_FLAG_SCAN_LIMIT

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "AnalyzerSettings":
        """
        Build settings from environment variables.

        SQLDUMP_SYMBOLS_PATH       os.pathsep separated directories with symbol maps
        SQLDUMP_TARGET_EXECUTABLE  executable name identifying the target process
        SQLDUMP_TRACE_FLAG_LIMIT   byte ceiling for the trace flag scan
        """
        env = os.environ if environ is None else environ
        settings = cls()
        if env.get("SQLDUMP_SYMBOLS_PATH"):
            settings.symbols_path = split_paths(env["SQLDUMP_SYMBOLS_PATH"])
        if env.get("SQLDUMP_TARGET_EXECUTABLE"):
            settings.target_executable = env["SQLDUMP_TARGET_EXECUTABLE"]
        if env.get("SQLDUMP_TRACE_FLAG_LIMIT"):
            settings.trace_flag_limit = int(env["SQLDUMP_TRACE_FLAG_LIMIT"])
        return settings
