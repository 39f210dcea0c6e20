"""Dump session for the SQL Server dump analyzer.

DumpSession ties the decoded minidump records to a DebugBackend and exposes
what a support engineer wants to know about a dump: the process command
line and environment, enabled trace flags, hardware, threads with
symbolized stacks and the loaded modules, with known third-party agents
flagged.

Records are decoded eagerly when the dump is opened. Everything derived
through the backend is computed on first access and cached.
"""
from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from . import memory_interpreter
from .backend import DebugBackend, MinidumpBackend
from .classification import DEFAULT_CLASSIFIER, ModuleClassifier
from .config import THREAD_START_SYMBOL, AnalyzerSettings
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
from .errors import DumpAnalyzerError

logger = logging.getLogger(__name__)


# ============================================================================
# LAZY CACHE
# ============================================================================

class LazyCache:
    """Key -> value cells filled on first request.

    A computation that raises leaves its cell unset, so the next request
    tries again.
    """

    def __init__(self):
        self._values: Dict[str, Any] = {}

    def get(self, key: str, compute: Callable[[], Any]) -> Any:
        if key not in self._values:
            self._values[key] = compute()
        return self._values[key]

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def clear(self) -> None:
        self._values.clear()


# ============================================================================
# DERIVED ENTITIES
# ============================================================================

@dataclass
class DumpThreadInfo:
    """A dump thread with its debugger index and symbolized stack."""
    debugger_thread_id: int
    thread: MinidumpThread
    symbolized_stack: List[str] = field(default_factory=list)
    classifier: ModuleClassifier = field(default=DEFAULT_CLASSIFIER, repr=False)

    @property
    def os_thread_id(self) -> int:
        return self.thread.thread_id

    @property
    def priority_class(self) -> int:
        return self.thread.priority_class

    @property
    def priority(self) -> int:
        return self.thread.priority

    @property
    def has_proper_thread_start(self) -> bool:
        """Bottom frame is the user mode thread entry point."""
        if not self.symbolized_stack:
            return False
        return THREAD_START_SYMBOL.lower() in self.symbolized_stack[-1].lower()

    @property
    def has_bad_module(self) -> bool:
        return self.classifier.matches('\n'.join(self.symbolized_stack))


@dataclass
class DumpLoadedModuleInfo:
    module: MinidumpModule
    module_name: str
    classifier: ModuleClassifier = field(default=DEFAULT_CLASSIFIER, repr=False)

    @property
    def is_known_bad_module(self) -> bool:
        return self.classifier.matches(self.module_name)


@dataclass
class DumpUnloadedModuleInfo:
    module: MinidumpUnloadedModule
    module_name: str


def format_frame(backend: DebugBackend, address: int) -> str:
    """
    Format a frame address as ``symbol+0xDISP``.

    Falls back to the raw address when the backend cannot symbolize it.
    """
    try:
        name, displacement = backend.symbolize_address(address)
    except DumpAnalyzerError:
        return f"0x{address:X}"
    return f"{name}+0x{displacement:X}"


# ============================================================================
# SESSION
# ============================================================================

class DumpSession:
    """
    An opened SQL Server dump.

    Use DumpSession.open() rather than the constructor. The session is a
    context manager; leaving the block closes the backend.
    """

    def __init__(self, file_name: Path, contents: MinidumpContents, backend: DebugBackend,
                 settings: Optional[AnalyzerSettings] = None,
                 classifier: ModuleClassifier = DEFAULT_CLASSIFIER):
        self._file_name = file_name
        self._contents = contents
        self._backend = backend
        settings = settings or AnalyzerSettings()
        self._settings = replace(settings, symbols_path=list(settings.symbols_path))
        self._classifier = classifier
        self._cache = LazyCache()

    @classmethod
    def open(cls, file_name: Union[str, Path], backend: Optional[DebugBackend] = None,
             settings: Optional[AnalyzerSettings] = None) -> "DumpSession":
        """
        Parse the dump and create a session over it.

        Args:
            file_name: Path to the .mdmp/.dmp file
            backend: DebugBackend to use; a MinidumpBackend over the same file by default
            settings: Analyzer settings; AnalyzerSettings.from_env() by default

        Raises:
            FileNotFoundError: the file does not exist
            FormatError: the header or stream directory is invalid
        """
        settings = settings or AnalyzerSettings.from_env()
        path = Path(file_name)
        contents = MinidumpReader().read_dump(path)
        if backend is None:
            backend = MinidumpBackend(path, contents, symbols_path=settings.symbols_path)
        return cls(path, contents, backend, settings)

    def close(self) -> None:
        self._backend.close()
        self._cache.clear()

    def __enter__(self) -> "DumpSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    @property
    def file_name(self) -> Path:
        return self._file_name

    @property
    def backend(self) -> DebugBackend:
        return self._backend

    @property
    def header(self) -> MinidumpHeader:
        return self._contents.header

    @property
    def directories(self) -> List[MinidumpDirectory]:
        return list(self._contents.directories)

    @property
    def comments(self) -> List[str]:
        """All wide comment streams, in file order."""
        return list(self._contents.comments)

    @property
    def stream_errors(self) -> List[str]:
        """Streams that could not be decoded when the dump was opened."""
        return list(self._contents.errors)

    @property
    def symbols_path(self) -> List[Path]:
        return list(self._settings.symbols_path)

    def set_symbols_path(self, symbols_path: Iterable[Union[str, Path]]) -> None:
        """Change the symbols path. Cached symbolized values are dropped."""
        self._settings.symbols_path = [Path(p) for p in symbols_path]
        self._backend.set_symbols_path(self._settings.symbols_path)
        self._cache.clear()

    @property
    def date_and_time_of_dump(self) -> datetime.datetime:
        return datetime.datetime.fromtimestamp(self.header.time_date_stamp, tz=datetime.timezone.utc)

    @property
    def dump_thread_debugger_id(self) -> Optional[int]:
        """Debugger index of the thread that wrote the dump, if the dump has an exception stream."""
        exception = self._contents.exception
        if exception is None:
            return None
        for index, thread in enumerate(self._contents.threads):
            if thread.thread_id == exception.thread_id:
                return index
        return None

    @property
    def process_pid(self) -> int:
        misc = self._contents.misc_info
        if misc is None or not misc.has_process_id:
            return 0
        return misc.process_id

    @property
    def process_uptime(self) -> datetime.timedelta:
        """Time between process creation and the dump."""
        misc = self._contents.misc_info
        if misc is None or not misc.has_process_times:
            return datetime.timedelta(0)
        return datetime.timedelta(seconds=max(0, self.header.time_date_stamp - misc.process_create_time))

    @property
    def is_memory_compressed(self) -> bool:
        """The dump carries SQL Server's compressed memory stream (not decoded here)."""
        return self._cache.get(
            'is_memory_compressed',
            lambda: self._contents.has_stream(MinidumpStreamType.SQL_COMPRESSED_MEMORY),
        )

    # ------------------------------------------------------------------
    # Process memory
    # ------------------------------------------------------------------

    @property
    def process_command_line(self) -> str:
        return self._cache.get(
            'process_command_line',
            lambda: memory_interpreter.get_process_command_line(self._backend),
        )

    @property
    def environment_variables(self) -> Dict[str, str]:
        return self._cache.get(
            'environment_variables',
            lambda: memory_interpreter.parse_environment_block(
                memory_interpreter.get_environment_block_raw(self._backend)),
        )

    @property
    def trace_flags(self) -> List[int]:
        return self._cache.get(
            'trace_flags',
            lambda: memory_interpreter.get_trace_flags(
                self._backend, limit=self._settings.trace_flag_limit),
        )

    @property
    def sql_instance_name(self) -> str:
        return self._cache.get(
            'sql_instance_name',
            lambda: memory_interpreter.get_instance_name(self.process_command_line),
        )

    @property
    def system_manufacturer(self) -> str:
        return self._cache.get(
            'system_manufacturer',
            lambda: memory_interpreter.get_system_manufacturer(self._backend),
        )

    @property
    def system_product_name(self) -> str:
        return self._cache.get(
            'system_product_name',
            lambda: memory_interpreter.get_system_product_name(self._backend),
        )

    def _environment_value(self, name: str) -> str:
        return self.environment_variables.get(name, "")

    @property
    def number_of_processors(self) -> int:
        try:
            return int(self._environment_value("NUMBER_OF_PROCESSORS"))
        except ValueError:
            return 0

    @property
    def service_account_name(self) -> str:
        return self._environment_value("USERNAME")

    @property
    def service_account_domain(self) -> str:
        return self._environment_value("USERDOMAIN")

    @property
    def computer_domain_name(self) -> str:
        return self._environment_value("USERDNSDOMAIN")

    @property
    def computer_name(self) -> str:
        return self._environment_value("COMPUTERNAME")

    # ------------------------------------------------------------------
    # Threads and modules
    # ------------------------------------------------------------------

    def get_symbolized_thread_stack(self, debugger_thread_id: int) -> List[str]:
        """Frames of one thread, innermost first."""
        return [format_frame(self._backend, address)
                for address in self._backend.get_stack_trace(debugger_thread_id)]

    def _build_threads(self) -> List[DumpThreadInfo]:
        threads = []
        for index, thread in enumerate(self._contents.threads):
            threads.append(DumpThreadInfo(
                debugger_thread_id=index,
                thread=thread,
                symbolized_stack=self.get_symbolized_thread_stack(index),
                classifier=self._classifier,
            ))
        logger.debug("Symbolized %d threads", len(threads))
        return threads

    @property
    def threads(self) -> List[DumpThreadInfo]:
        return self._cache.get('threads', self._build_threads)

    @property
    def loaded_modules(self) -> List[DumpLoadedModuleInfo]:
        return self._cache.get('loaded_modules', lambda: [
            DumpLoadedModuleInfo(module, name, self._classifier)
            for name, module in self._contents.loaded_modules
        ])

    @property
    def unloaded_modules(self) -> List[DumpUnloadedModuleInfo]:
        return self._cache.get('unloaded_modules', lambda: [
            DumpUnloadedModuleInfo(module, name)
            for name, module in self._contents.unloaded_modules
        ])

    @property
    def is_target_server_dump(self) -> bool:
        target = self._settings.target_executable.lower()
        return any(target in m.module_name.lower() for m in self.loaded_modules)


# ============================================================================
# REPORT
# ============================================================================

REPORT_SECTIONS = ("summary", "threads", "modules", "environment", "traceflags")


def _safe(getter: Callable[[], Any], default: Any = "<unavailable>") -> Any:
    """Evaluate a lazy property for the report, logging instead of failing."""
    try:
        return getter()
    except DumpAnalyzerError as e:
        logger.warning("%s", e)
        return default


def _summary_section(session: DumpSession) -> List[str]:
    lines = ["SUMMARY", "-" * 70]
    lines.append(f"Dump File: {session.file_name.name}")
    lines.append(f"Dump Time: {session.date_and_time_of_dump:%Y-%m-%d %H:%M:%S} UTC")
    lines.append(f"SQL Server Dump: {'Yes' if session.is_target_server_dump else 'No'}")
    lines.append(f"Memory Compressed: {'Yes' if session.is_memory_compressed else 'No'}")
    lines.append(f"Full Memory: {'Yes' if session.header.has_full_memory else 'No'}")
    lines.append(f"Process ID: {session.process_pid}")
    lines.append(f"Process Uptime: {session.process_uptime}")
    if session.dump_thread_debugger_id is not None:
        lines.append(f"Dumping Thread: {session.dump_thread_debugger_id}")
    lines.append(f"Command Line: {_safe(lambda: session.process_command_line)}")
    lines.append(f"Instance Name: {_safe(lambda: session.sql_instance_name)}")
    lines.append(f"Manufacturer: {_safe(lambda: session.system_manufacturer)}")
    lines.append(f"Product: {_safe(lambda: session.system_product_name)}")
    for i, comment in enumerate(session.comments, 1):
        lines.append(f"Comment {i}: {comment}")
    for error in session.stream_errors:
        lines.append(f"Stream Error: {error}")
    return lines


def _threads_section(session: DumpSession) -> List[str]:
    lines = ["THREADS", "-" * 70]
    threads = _safe(lambda: session.threads, [])
    for t in threads:
        markers = []
        if not t.has_proper_thread_start:
            markers.append("no thread start")
        if t.has_bad_module:
            markers.append("KNOWN BAD MODULE")
        suffix = f" [{', '.join(markers)}]" if markers else ""
        lines.append(f"Thread {t.debugger_thread_id} (OS id 0x{t.os_thread_id:X}){suffix}")
        for n, frame in enumerate(t.symbolized_stack):
            lines.append(f"  #{n:02d} {frame}")
    return lines


def _modules_section(session: DumpSession) -> List[str]:
    lines = ["LOADED MODULES", "-" * 70]
    for m in session.loaded_modules:
        flag = "  [KNOWN BAD MODULE]" if m.is_known_bad_module else ""
        lines.append(f"0x{m.module.base_of_image:016X}  {m.module.version_info.file_version:<16} {m.module_name}{flag}")
    if session.unloaded_modules:
        lines.append("")
        lines.append("UNLOADED MODULES")
        lines.append("-" * 70)
        for u in session.unloaded_modules:
            lines.append(f"0x{u.module.base_of_image:016X}  {u.module_name}")
    return lines


def _environment_section(session: DumpSession) -> List[str]:
    lines = ["ENVIRONMENT", "-" * 70]
    variables = _safe(lambda: session.environment_variables, {})
    for name in sorted(variables, key=str.lower):
        lines.append(f"{name}={variables[name]}")
    return lines


def _traceflags_section(session: DumpSession) -> List[str]:
    lines = ["TRACE FLAGS", "-" * 70]
    flags = _safe(lambda: session.trace_flags, [])
    lines.append(", ".join(str(f) for f in flags) if flags else "(none)")
    return lines


_SECTION_BUILDERS = {
    "summary": _summary_section,
    "threads": _threads_section,
    "modules": _modules_section,
    "environment": _environment_section,
    "traceflags": _traceflags_section,
}


def generate_report(session: DumpSession, sections: Optional[Sequence[str]] = None) -> str:
    """Generate a text report for the requested sections (all by default)."""
    lines = ["=" * 70, "SQL SERVER DUMP ANALYSIS REPORT", "=" * 70, ""]
    for name in sections or REPORT_SECTIONS:
        builder = _SECTION_BUILDERS.get(name)
        if builder is None:
            raise ValueError(f"Unknown report section: {name}")
        lines.extend(builder(session))
        lines.append("")
    return '\n'.join(lines)
