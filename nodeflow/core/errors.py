"""Rust-style error display for nodeflow definition and configuration errors."""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Absolute path to the nodeflow package directory, used to tell library
# frames apart from user code when locating the caller.
_NODEFLOW_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Error codes for definition/config errors.

    Organized by category:
    - E001-E099: Workflow definition errors
    - E100-E199: Node registry errors
    - E200-E299: Config/store errors
    """

    # Workflow definition (E001-E099)
    WORKFLOW_NO_NAME = 'E001'
    WORKFLOW_NO_NODES = 'E002'
    WORKFLOW_DUPLICATE_NODE_ID = 'E003'
    WORKFLOW_UNKNOWN_EDGE_NODE = 'E004'
    WORKFLOW_NO_ENTRY_NODE = 'E005'
    WORKFLOW_AMBIGUOUS_ENTRY_NODE = 'E006'
    WORKFLOW_INVALID_BRANCH = 'E007'
    WORKFLOW_INVALID_NODE_CONFIG = 'E008'
    WORKFLOW_UNKNOWN_NODE_TYPE = 'E009'
    WORKFLOW_INVALID_TRIGGER = 'E010'
    WORKFLOW_NOT_FOUND = 'E011'
    WORKFLOW_INACTIVE = 'E012'
    WORKFLOW_DUPLICATE_ID = 'E013'
    WORKFLOW_PUBLISH_CONFLICT = 'E014'

    # Node registry (E100-E199)
    NODE_TYPE_DUPLICATE = 'E100'
    NODE_TYPE_NOT_REGISTERED = 'E101'

    # Config/store (E200-E299)
    STORE_INVALID_URL = 'E200'
    CONFIG_INVALID_BACKOFF = 'E201'
    CONFIG_INVALID_ENGINE = 'E202'
    CONFIG_INVALID_BREAKER = 'E203'
    CONFIG_INVALID_DISPATCHER = 'E204'
    CONFIG_INVALID_EXCEPTION_MAPPER = 'E205'
    CLI_INVALID_ARGS = 'E206'
    CLI_INVALID_LOCATOR = 'E207'
    STORE_UNAVAILABLE = 'E208'


class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    DIM = '\033[2m'


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if _env_flag('NODEFLOW_FORCE_COLOR'):
        return True
    # https://no-color.org/
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


@dataclass
class SourceLocation:
    """Source code location information."""

    file: str
    line: int
    column: int | None = None
    end_column: int | None = None

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    def get_source_line(self) -> str | None:
        line = linecache.getline(self.file, self.line)
        return line.rstrip('\n') if line else None

    def format_short(self) -> str:
        """Format as 'file:line' or 'file:line:col'."""
        if self.column is not None:
            return f'{self.file}:{self.line}:{self.column}'
        return f'{self.file}:{self.line}'


@dataclass
class NodeflowError(Exception):
    """Base exception for nodeflow definition and configuration errors.

    Renders as:

        error[E004]: edge references unknown node 'notify'
          --> flows.py:12
           |
         12| Edge(source='start', target='notify'),
           | ^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^
           = note: known nodes: start, check

    Runtime node failures do not use this class; see ``nodeflow.core.exceptions``.
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)
        if self.location is None:
            user_frame = _find_user_frame()
            if user_frame is not None:
                self.location = SourceLocation.from_frame(user_frame)

    def with_note(self, note: str) -> NodeflowError:
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> NodeflowError:
        self.help_text = help_text
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format the error in Rust style."""
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors

        code_part = f'[{self.code.value}]' if self.code else ''
        lines: list[str] = ['', f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}']

        if self.location:
            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )
            source_line = self.location.get_source_line()
            if source_line:
                line_num = str(self.location.line)
                gutter = ' ' * len(line_num)
                if self.location.column is not None:
                    start = self.location.column
                    width = max(1, (self.location.end_column or start + 1) - start)
                    underline = ' ' * start + '^' * width
                else:
                    stripped = source_line.lstrip()
                    underline = ' ' * (len(source_line) - len(stripped)) + '^' * len(stripped)
                lines.append(f'   {c.BLUE}{gutter}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')
                lines.append(f'   {c.BLUE}{gutter}|{c.RESET} {c.RED}{underline}{c.RESET}')

        for note in self.notes:
            first, *rest = note.split('\n')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {first}')
            lines.extend(f'          {extra}' for extra in rest)

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            lines.extend(f'        {help_line}' for help_line in self.help_text.split('\n'))

        return '\n'.join(lines)

    def __str__(self) -> str:
        # Plain text so the message is safe in logs and stored error fields.
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _nodeflow_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    if _env_flag('NODEFLOW_PLAIN_ERRORS') or not isinstance(exc_value, NodeflowError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)
    if _env_flag('NODEFLOW_VERBOSE'):
        c = _Colors if _should_use_colors() else _NoColors
        print(file=sys.stderr)
        print(f'{c.DIM}Full traceback (NODEFLOW_VERBOSE=1):{c.RESET}', file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _nodeflow_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


@dataclass
class WorkflowValidationError(NodeflowError):
    """Raised when a workflow definition is structurally invalid."""

    pass


@dataclass
class ConfigurationError(NodeflowError):
    """Raised when app, engine or store configuration is invalid."""

    pass


@dataclass
class RegistryError(NodeflowError):
    """Raised when a node type registration or lookup fails."""

    pass


@dataclass
class StoreError(NodeflowError):
    """Raised when the durable store cannot be initialized or reached."""

    pass


class ValidationReport:
    """Collects several NodeflowError instances within one validation phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[NodeflowError] = []

    def add(self, error: NodeflowError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format all collected errors, then append an aborting summary."""
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors

        parts = [error.format_rust_style(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to '
            f'{len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(NodeflowError):
    """Wraps a ValidationReport containing 2+ errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Locations are per-error in the report
        super(NodeflowError, self).__init__(self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise what a report collected.

    - 0 errors: returns normally
    - 1 error: raises that error unchanged
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


def _find_user_frame() -> Any | None:
    """Find the first frame outside nodeflow internals and installed packages."""
    frame = inspect.currentframe()
    while frame is not None:
        filename = frame.f_code.co_filename
        if (
            not filename.startswith('<')
            and not filename.startswith(_NODEFLOW_PKG_DIR)
            and '/site-packages/' not in filename
        ):
            return frame
        frame = frame.f_back
    return None
