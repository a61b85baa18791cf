import argparse
import io
import os
import re
import sys
from typing import Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

__version__ = "0.1.0"

NO_COL = "<no col {}>"
ALL_DIGIT_RX = re.compile(r"[0-9]+")

# Escapes accepted for -s so TSV and NUL separated input need no shell quoting
SEPARATOR_ESCAPES = {
    "\\t": "\t",
    "\\0": "\0",
}

# (index, cell text); text is None when the row has no such column
SelectedCell = Tuple[int, Optional[str]]


class SvgrepError(Exception):
    """Base error for all fatal svgrep failures."""


class InputFileError(SvgrepError):
    pass


class ExpressionSyntaxError(SvgrepError):
    pass


class InvalidColumnSpec(SvgrepError):
    pass


class InvalidRegex(SvgrepError):
    pass


class InvalidSelectionIndex(SvgrepError):
    pass


class Row(BaseModel):
    """Model representing one input record split into cells"""
    model_config = ConfigDict(frozen=True)

    cells: List[str]

    @classmethod
    def parse_line(cls, line: str, sep: str) -> "Row":
        """Split a raw line on the literal separator (no quoting rules)"""
        return cls(cells=line.split(sep))

    def to_line(self, sep: str) -> str:
        """Join the cells back into the raw line"""
        return sep.join(self.cells)

    def cell(self, index: int) -> Optional[str]:
        """Get the cell at index, or None if the row is too short"""
        if index < len(self.cells):
            return self.cells[index]
        return None


class ColumnPredicate(BaseModel):
    """Model representing a regex bound to one column index"""
    model_config = ConfigDict(frozen=True)

    column: int
    regex: re.Pattern

    def model_post_init(self, __context):
        if self.column < 0:
            raise ValueError("ColumnPredicate column must be a non-negative index")

    def holds(self, row: Row) -> bool:
        """True if the row has the column and the regex is found in it"""
        cell = row.cell(self.column)
        return cell is not None and self.regex.search(cell) is not None


class AnyColumnPredicate(BaseModel):
    """Model representing a regex that has to be found in at least one cell"""
    model_config = ConfigDict(frozen=True)

    regex: re.Pattern

    def holds(self, row: Row) -> bool:
        return any(self.regex.search(cell) is not None for cell in row.cells)


class CellSelection(BaseModel):
    """Model representing the columns to print; None means every column"""
    model_config = ConfigDict(frozen=True)

    columns: Optional[List[int]] = None

    def model_post_init(self, __context):
        if self.columns is not None and any(c < 0 for c in self.columns):
            raise ValueError("CellSelection columns must be non-negative indices")

    @property
    def select_all(self) -> bool:
        return self.columns is None

    def select(self, row: Row) -> List[SelectedCell]:
        """Pick the selected cells of a row, in selection order"""
        if self.columns is None:
            return list(enumerate(row.cells))
        # Duplicates are kept, missing columns become None
        return [(index, row.cell(index)) for index in self.columns]


class MatchExpression(BaseModel):
    """Model representing one compiled --match expression"""
    model_config = ConfigDict(frozen=True)

    source: str = ""
    column_predicates: List[ColumnPredicate] = []
    any_predicates: List[AnyColumnPredicate] = []
    selection: CellSelection = CellSelection()

    @property
    def is_universal(self) -> bool:
        """An expression without any predicate matches every row"""
        return not self.column_predicates and not self.any_predicates

    def matches(self, row: Row) -> bool:
        """Decide whether the row satisfies this expression"""
        base = self.is_universal
        # all() over no column predicates is true, so any-column-only
        # expressions are decided by any_ok alone
        indexed_ok = base or all(p.holds(row) for p in self.column_predicates)
        any_ok = all(p.holds(row) for p in self.any_predicates)
        return indexed_ok and any_ok

    def matches_and_select(self, row: Row) -> Optional[List[SelectedCell]]:
        """Return the selected cells if the row matches, else None"""
        if not self.matches(row):
            return None
        return self.selection.select(row)

    def describe(self) -> str:
        """One line summary used by --verbose"""
        if self.selection.select_all:
            columns = "all columns"
        else:
            columns = "columns " + ",".join(str(c) for c in self.selection.columns)
        return (f"match {self.source!r}: {len(self.column_predicates)} column predicate(s), "
                f"{len(self.any_predicates)} any-column predicate(s), selecting {columns}")


class Delimiters(BaseModel):
    """Model representing the characters that structure a match expression"""
    model_config = ConfigDict(frozen=True)

    select: str = "@"
    conjunction: str = "&"
    equals: str = "="

    def model_post_init(self, __context):
        for name in ("select", "conjunction", "equals"):
            value = getattr(self, name)
            if len(value) != 1:
                raise ValueError(f"{name} delimiter must be a single character, got {value!r}")

    def describe(self) -> str:
        """One line summary used by --verbose"""
        return (f"delimiters: select {self.select!r}, conjunction {self.conjunction!r}, "
                f"equals {self.equals!r}")


class MatchCompiler:
    """Match-expression compiler that turns '<col>=<regex>&...@<cols>' text into a MatchExpression"""

    def __init__(self, delimiters: Optional[Delimiters] = None):
        """Initialize the compiler with the given delimiter characters"""
        self.ANY = "*"         # Column spec matching any column
        self.COL_SEP = ","     # Separator of the display column list

        self.delimiters = delimiters or Delimiters()

        # Delimiters may be regex metacharacters
        select = re.escape(self.delimiters.select)
        conj = re.escape(self.delimiters.conjunction)
        eq = re.escape(self.delimiters.equals)

        self.select_rx = re.compile(select)
        self.conj_rx = re.compile(conj)
        # Column spec runs up to the first equals char, the regex is the rest
        self.clause_rx = re.compile(f"([^{eq}]*){eq}(.*)", re.DOTALL)

    def compile(self, text: str) -> MatchExpression:
        """Compile one match expression"""
        parts = self.select_rx.split(text)
        if len(parts) > 2:
            raise ExpressionSyntaxError(
                f"{text!r} is no valid match expression: "
                f"{self.delimiters.select!r} may occur only once")

        clause_text = parts[0]
        if len(parts) == 2:
            selection = self.selection(parts[1])
        else:
            selection = CellSelection()

        column_predicates = []
        any_predicates = []
        if clause_text:
            for clause in self.conj_rx.split(clause_text):
                col_spec, regex = self.clause(clause, text)
                if col_spec == self.ANY:
                    any_predicates.append(AnyColumnPredicate(regex=regex))
                else:
                    column_predicates.append(ColumnPredicate(column=int(col_spec), regex=regex))

        return MatchExpression(
            source=text,
            column_predicates=column_predicates,
            any_predicates=any_predicates,
            selection=selection,
        )

    def clause(self, clause: str, text: str) -> Tuple[str, re.Pattern]:
        """Parse a single '<col>=<regex>' clause"""
        m = self.clause_rx.fullmatch(clause)
        if not m:
            raise ExpressionSyntaxError(
                f"{clause!r} in {text!r} is no valid clause of the form "
                f"<col>{self.delimiters.equals}<regex>")

        col_spec, pattern = m.group(1), m.group(2)
        if col_spec != self.ANY and not ALL_DIGIT_RX.fullmatch(col_spec):
            raise InvalidColumnSpec(f"{col_spec!r} is no valid column expression in {text!r}")

        return col_spec, self.regex(pattern)

    def regex(self, pattern: str) -> re.Pattern:
        try:
            return re.compile(pattern)
        except re.error as e:
            raise InvalidRegex(f"{pattern!r} is no valid regular expression: {e}") from e

    def selection(self, text: str) -> CellSelection:
        """Parse the display column list following the select char"""
        columns = []
        # Entries are bare digits, like column specs; no surrounding spaces
        for entry in text.split(self.COL_SEP):
            if not ALL_DIGIT_RX.fullmatch(entry):
                raise InvalidSelectionIndex(f"{entry!r} is no valid display column in {text!r}")
            columns.append(int(entry))
        return CellSelection(columns=columns)


def parse_separator(sep: str) -> str:
    """Translate escaped separators like '\\t' into the character itself"""
    return SEPARATOR_ESCAPES.get(sep, sep)


class Config(BaseModel):
    """Model representing the whole run configuration, built once at startup"""
    model_config = ConfigDict(frozen=True)

    separator: str = ";"
    trim: bool = False
    verbose: bool = False
    delimiters: Delimiters = Delimiters()
    expressions: List[MatchExpression] = []
    input_file: Optional[str] = None

    def model_post_init(self, __context):
        if not self.separator:
            raise ValueError("separator can not be empty")

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "Config":
        """Build the configuration and compile every --match expression"""
        delimiters = Delimiters(
            select=args.cell_select_char,
            conjunction=args.conj_char,
            equals=args.matches_char,
        )
        compiler = MatchCompiler(delimiters)
        expressions = [compiler.compile(text) for text in args.match or []]

        return cls(
            separator=parse_separator(args.separator),
            trim=args.trim,
            verbose=args.verbose,
            delimiters=delimiters,
            expressions=expressions,
            input_file=args.input_file,
        )


class RowPrinter:
    """Renders selected cells as '(index) text' fields"""

    def __init__(self, separator: str, trim: bool = False):
        self.separator = separator
        self.trim = trim

    def render_cell(self, index: int, text: Optional[str]) -> str:
        if text is None:
            text = NO_COL.format(index)
        elif self.trim:
            text = text.strip()
        return f"({index}) {text}"

    def render(self, selected: Iterable[SelectedCell]) -> str:
        """Render one output line"""
        return self.separator.join(self.render_cell(index, text) for index, text in selected)


def strip_line_ending(line: str) -> str:
    """Remove a trailing '\\r\\n' or '\\n'; a lone '\\r' is cell text"""
    if line.endswith("\r\n"):
        return line[:-2]
    if line.endswith("\n"):
        return line[:-1]
    return line


def open_input(filename: Optional[str] = None) -> io.TextIOBase:
    """Open a file, or stdin if no file is given, as utf-8 split on '\\n' only"""
    if filename is None:
        return io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", newline="\n")
    return open(filename, "r", encoding="utf-8", newline="\n")


def read_lines(filename: Optional[str] = None) -> Iterator[str]:
    """Yield the lines of a file, or stdin if no file is given, without line endings"""
    name = "<stdin>" if filename is None else filename
    try:
        with open_input(filename) as file:
            for line in file:
                yield strip_line_ending(line)
    except (OSError, UnicodeDecodeError) as e:
        raise InputFileError(f"Error reading file {name}: {e}") from e


class RowSearcher:
    """Drives rows through the compiled match expressions"""

    def __init__(self, config: Config):
        """Initialize the searcher with the given configuration"""
        self.config = config
        # Without any --match every row is printed in full
        self.expressions = list(config.expressions) or [MatchExpression()]
        self.printer = RowPrinter(config.separator, config.trim)

        self.lines_read = 0
        self.lines_printed = 0

    def search_row(self, row: Row) -> Iterator[str]:
        """Yield one rendered line per expression the row matches"""
        for expression in self.expressions:
            selected = expression.matches_and_select(row)
            if selected is not None:
                yield self.printer.render(selected)

    def search(self, lines: Iterable[str]) -> Iterator[str]:
        """Search raw lines, yielding output lines in input order"""
        for line in lines:
            self.lines_read += 1
            row = Row.parse_line(line, self.config.separator)
            for out in self.search_row(row):
                self.lines_printed += 1
                yield out

    def search_file(self, filename: Optional[str] = None) -> Iterator[str]:
        """Search the given file, or stdin"""
        return self.search(read_lines(filename))


MATCH_HELP = """\
match expressions:
  <col>=<regex>[&<col>=<regex>...][@<n>,<n>...]

  <col> is a natural number or * meaning any column.
  <regex> is a regular expression searched for in the cells at column <col>.
  All clauses joined by & have to match; the columns after @ are printed
  (default: all). Several -m options are alternatives, and a row is printed
  once for every expression it matches. The =, & and @ characters can be
  changed with --matches-char, --conj-char and --cell-select-char.
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="svgrep",
        description="svgrep -- Separated Values Grep: greps and extracts cells of CSV/TSV/*SV files",
        epilog=MATCH_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("input_file", metavar="INPUT_FILE", nargs="?", default=None,
                        help="The separated values file (default: stdin)")
    parser.add_argument("-s", "--separator", default=";",
                        help="Sets the separator to be used, \\t means tab (default: ';')")
    parser.add_argument("-m", "--match", action="append", metavar="EXPR",
                        help="A match expression, may be given several times")
    parser.add_argument("--matches-char", default="=", metavar="CHAR",
                        help="Separates <col> from <regex> in a clause (default: '=')")
    parser.add_argument("--conj-char", default="&", metavar="CHAR",
                        help="Separates the clauses of one expression (default: '&')")
    parser.add_argument("--cell-select-char", default="@", metavar="CHAR",
                        help="Separates the clauses from the display columns (default: '@')")
    parser.add_argument("-t", "--trim", action="store_true",
                        help="Trim whitespace around cells when printing")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Report the compiled expressions and line counts on stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the program"""
    args = build_parser().parse_args(argv)

    try:
        # Every expression is compiled before the first line is read
        config = Config.from_args(args)
        searcher = RowSearcher(config)

        if config.verbose:
            sys.stderr.write(config.delimiters.describe() + "\n")
            for expression in searcher.expressions:
                sys.stderr.write(expression.describe() + "\n")

        for line in searcher.search_file(config.input_file):
            print(line)

        if config.verbose:
            sys.stderr.write(f"{searcher.lines_printed} lines printed / {searcher.lines_read} lines read.\n")

    except (SvgrepError, ValueError) as e:
        sys.stderr.write(f"Error: {e}\n")
        sys.exit(1)
    except BrokenPipeError:
        # Reader went away (e.g. piped into head); silence the flush at exit
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(1)


if __name__ == "__main__":
    main()
