#!/usr/bin/env python3
"""
SQL SELECT migration engine: retarget saved queries from deprecated tables/columns to a new schema.

Driven by a mapping of deprecated object -> new object, one row per rename:
  Amendment        -> Orders              (table-level: the whole table is renamed)
  Amendment.Name   -> Orders.OrderNumber  (field-level: one column, implies the table rename)

PIPELINE (per query)
--------------------
1. Sanitize      -- normalize the raw text (control chars, line endings, trailing commas,
                    whitespace) so that sqlglot has a better chance to parse it.
2. Parse         -- sqlglot parse of the sanitized text into ParsedQuery or Unparsable.
3. Structural    -- walk every SELECT in the tree: resolve aliases, decide which tables must be
                    renamed, rename table/column nodes and record an ordered replacement log.
4. Rewrite       -- apply the replacement log to the ORIGINAL text with ordered regex passes so
                    comments, indentation and untouched tokens survive. One-to-many table splits
                    get synthetic JOINs for the secondary target tables.
   Fallback      -- when step 2 yields Unparsable, a replacement log is derived straight from the
                    mapping rows and fed to the same rewriter (single target per table, no joins).

No step raises past a single query: every input QueryRecord comes back, impacted or not.
"""

from __future__ import annotations

import logging
import re
import string
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional, Union

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

# Module-level logger; configured by the CLI (migrate_queries.main)
log = logging.getLogger("sql_migration")

STRATEGY_STRUCTURAL = "structural"
STRATEGY_FALLBACK = "fallback"

_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"

# Words that may follow "FROM <table>" / "JOIN <table>" and are never a table alias.
_CLAUSE_KEYWORDS = (
    "WHERE", "JOIN", "ON", "INNER", "LEFT", "RIGHT", "FULL", "OUTER", "CROSS", "NATURAL",
    "GROUP", "ORDER", "HAVING", "LIMIT", "OFFSET", "FETCH", "UNION", "EXCEPT", "INTERSECT",
    "USING", "WINDOW", "QUALIFY",
)

_SET_OPERATIONS = (exp.Union, exp.Except, exp.Intersect)

# "CAST(a.x AS INT)": the AS there names a type, not a column alias.
_CAST_OPEN_RE = re.compile(r"\b(?:TRY_CAST|CAST|CONVERT)\s*\(\s*$", re.IGNORECASE)


# -----------------------------------------------------------------------------
# Data model
# -----------------------------------------------------------------------------


@dataclass
class MappingEntry:
    """One deprecated object -> new object row, split into table and field parts."""

    deprecated_object: str
    new_object: str
    deprecated_table: str = ""
    deprecated_field: Optional[str] = None
    new_table: str = ""
    new_field: Optional[str] = None

    def __post_init__(self):
        # Built from the two object strings alone: derive the table/field parts.
        if not self.deprecated_table:
            old_table, old_field = _split_object(self.deprecated_object)
            new_table, new_field = _split_object(self.new_object)
            self.deprecated_table = old_table
            self.deprecated_field = self.deprecated_field or old_field or None
            self.new_table = self.new_table or new_table
            self.new_field = self.new_field or new_field or None
        if self.deprecated_field and not self.new_field:
            # "Amendment.Name -> Orders" moves the column without renaming it
            self.new_field = self.deprecated_field

    @property
    def is_field_level(self) -> bool:
        return bool(self.deprecated_field)

    @property
    def is_table_level(self) -> bool:
        return not self.deprecated_field


@dataclass
class QueryRecord:
    name: str
    description: str = ""
    original_query: str = ""
    updated_query: Optional[str] = None
    impacted: bool = False
    old_url: Optional[str] = None
    new_url: Optional[str] = None
    status: Optional[str] = None
    strategy: Optional[str] = None  # which path produced updated_query


def _split_object(text: Optional[str]) -> tuple[str, str]:
    """'table[.field]' -> (table, field), split on the first dot; missing parts are ''."""
    table, _, fld = (text or "").strip().partition(".")
    return table.strip(), fld.strip()


def parse_mapping_entry(deprecated_object: Optional[str], new_object: Optional[str]) -> Optional[MappingEntry]:
    """Split 'table[.field]' on the first dot for both sides. Returns None for incomplete rows."""
    old = (deprecated_object or "").strip()
    new = (new_object or "").strip()
    if not old or not new:
        return None
    entry = MappingEntry(deprecated_object=old, new_object=new)
    if not entry.deprecated_table or not entry.new_table:
        return None
    return entry


# -----------------------------------------------------------------------------
# Mapping index
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class MappingIndex:
    """Lookups built once per batch; read-only afterwards and shared by all queries."""

    field_mappings: dict[str, MappingEntry]
    table_mappings: dict[str, list[MappingEntry]]

    def field_mapping(self, table: str, column: str) -> Optional[MappingEntry]:
        return self.field_mappings.get(f"{table.lower()}.{column.lower()}")

    def first_table_target(self, table: str) -> Optional[str]:
        entries = self.table_mappings.get(table.lower())
        return entries[0].new_table if entries else None


def build_mapping_index(entries: Iterable[Optional[MappingEntry]]) -> MappingIndex:
    """
    field_mappings: "table.column" (lower) -> entry. Duplicate keys: the LAST row wins.
    table_mappings: table (lower) -> every table-level entry for it, in input order.
    """
    field_mappings: dict[str, MappingEntry] = {}
    table_mappings: dict[str, list[MappingEntry]] = {}
    for entry in entries:
        if entry is None or not entry.deprecated_table or not entry.new_table:
            continue
        if entry.is_field_level:
            if not entry.new_field:
                continue
            field_mappings[f"{entry.deprecated_table.lower()}.{entry.deprecated_field.lower()}"] = entry
        else:
            table_mappings.setdefault(entry.deprecated_table.lower(), []).append(entry)
    return MappingIndex(field_mappings=field_mappings, table_mappings=table_mappings)


# -----------------------------------------------------------------------------
# Sanitizer
# -----------------------------------------------------------------------------

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_COMMA_BEFORE_CLAUSE_RE = re.compile(
    r",\s*(FROM|WHERE|GROUP\s+BY|ORDER\s+BY|LIMIT|HAVING|UNION)\b", re.IGNORECASE
)
_COMMA_BEFORE_PAREN_RE = re.compile(r",\s*\)")
_LEADING_WS_RE = re.compile(r"^[ \t]+", re.MULTILINE)
_INTERIOR_SPACES_RE = re.compile(r"(?<=\S) {2,}")
_TRAILING_WS_RE = re.compile(r"[ \t]+$", re.MULTILINE)


def sanitize_sql(sql: Optional[str]) -> str:
    """Normalize raw query text for parsing only; the original text is what gets rewritten."""
    if not sql:
        return ""
    result = _CONTROL_CHARS_RE.sub("", sql)
    result = result.replace("\r\n", "\n").replace("\r", "\n")
    # "SELECT a, b, FROM t" -> "SELECT a, b\nFROM t" (spreadsheet copy-paste artifact)
    result = _COMMA_BEFORE_CLAUSE_RE.sub(lambda m: "\n" + m.group(1), result)
    result = _COMMA_BEFORE_PAREN_RE.sub(")", result)
    result = _LEADING_WS_RE.sub("    ", result)
    result = _INTERIOR_SPACES_RE.sub(" ", result)
    result = _TRAILING_WS_RE.sub("", result)
    return result.strip()


# -----------------------------------------------------------------------------
# Structural parse
# -----------------------------------------------------------------------------


@dataclass
class ParsedQuery:
    tree: exp.Expression


@dataclass
class Unparsable:
    reason: str


ParseOutcome = Union[ParsedQuery, Unparsable]


def _is_select_statement(node: exp.Expression) -> bool:
    if isinstance(node, exp.Subquery):
        return _is_select_statement(node.this)
    if isinstance(node, _SET_OPERATIONS):
        return _is_select_statement(node.this) and _is_select_statement(node.expression)
    return isinstance(node, exp.Select)


def parse_select(sql: str, dialect: Optional[str] = None) -> ParseOutcome:
    """Parse sanitized text with sqlglot. Only a single SELECT (or set operation of SELECTs) is Parsed."""
    if not sql or not sql.strip():
        return Unparsable("empty query")
    try:
        statements = [s for s in sqlglot.parse(sql, read=dialect or None) if s is not None]
    except SqlglotError as e:
        lines = str(e).strip().splitlines()
        return Unparsable(lines[0] if lines else type(e).__name__)
    except RecursionError:
        return Unparsable("query nested too deeply to parse")
    except Exception as e:
        return Unparsable(f"parser failure: {type(e).__name__}: {e}")
    if len(statements) != 1:
        return Unparsable(f"expected one statement, found {len(statements)}")
    tree = statements[0]
    if not _is_select_statement(tree):
        return Unparsable(f"not a SELECT statement ({tree.key.upper()})")
    return ParsedQuery(tree)


# -----------------------------------------------------------------------------
# Structural migrator
# -----------------------------------------------------------------------------


def _qualified_columns(node: Optional[exp.Expression]) -> Iterator[exp.Column]:
    """
    Yield table-qualified column references under node. Descends through binary operators,
    unary wrappers (parentheses, NOT), tuples, function arguments, BETWEEN (operand and bounds),
    the left side of IN, select-list aliases and ORDER BY items. Subqueries are not entered.
    """
    if node is None:
        return
    if isinstance(node, exp.Column):
        if node.table:
            yield node
    elif isinstance(node, exp.Between):
        for key in ("this", "low", "high"):
            yield from _qualified_columns(node.args.get(key))
    elif isinstance(node, exp.In):
        yield from _qualified_columns(node.this)
    elif isinstance(node, (exp.Binary, exp.Unary, exp.Func, exp.Tuple, exp.Distinct, exp.Alias, exp.Ordered,
                           exp.Where, exp.Group, exp.Order)):
        for child in node.iter_expressions():
            yield from _qualified_columns(child)


def _clause_columns(select: exp.Select) -> Iterator[exp.Column]:
    """Columns of the select list, WHERE, GROUP BY and ORDER BY, in that order."""
    for item in select.expressions:
        yield from _qualified_columns(item)
    for key in ("where", "group", "order"):
        yield from _qualified_columns(select.args.get(key))


def _source_tables(select: exp.Select) -> list[exp.Table]:
    """Plain tables in this SELECT's FROM item and JOIN right-hand items."""
    return [
        t for t in select.find_all(exp.Table)
        if t.parent_select is select and isinstance(t.parent, (exp.From, exp.Join))
    ]


@dataclass
class _SelectScope:
    alias_to_table: dict[str, str] = field(default_factory=dict)
    alias_to_original: dict[str, str] = field(default_factory=dict)
    rename_targets: dict[str, str] = field(default_factory=dict)  # original table (lower) -> new table


@dataclass
class StructuralResult:
    has_changes: bool
    replacements: dict[str, str]


class StructuralMigrator:
    """Rename deprecated tables and columns inside a parsed SELECT tree, logging every substitution."""

    def __init__(self, index: MappingIndex):
        self.index = index
        self.replacements: dict[str, str] = {}
        self.has_changes = False

    def migrate(self, tree: exp.Expression) -> StructuralResult:
        # Every SELECT gets its own alias scope: set-operation branches, CTE bodies, derived tables.
        for select in list(tree.find_all(exp.Select)):
            self._process_select(select)
        return StructuralResult(has_changes=self.has_changes, replacements=dict(self.replacements))

    def _process_select(self, select: exp.Select) -> None:
        scope = _SelectScope()
        tables = _source_tables(select)
        self._collect_aliases(scope, tables)
        self._analyze_field_usage(scope, select, tables)
        self._rewrite_tables(scope, select, tables)
        for column in list(_clause_columns(select)):
            self._rewrite_column(scope, column)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _collect_aliases(self, scope: _SelectScope, tables: list[exp.Table]) -> None:
        for table in tables:
            name = table.name.lower()
            key = (table.alias or table.name).lower()
            scope.alias_to_table[key] = name
            scope.alias_to_original[key] = name

    def _analyze_field_usage(self, scope: _SelectScope, select: exp.Select, tables: list[exp.Table]) -> None:
        for column in _clause_columns(select):
            qualifier = column.table.lower()
            actual = scope.alias_to_table.get(qualifier, qualifier)
            entry = self.index.field_mapping(actual, column.name)
            if entry is not None:
                scope.rename_targets[actual] = entry.new_table
                continue
            # Field mappings overwrite; the table-level default only fills a gap (first row wins).
            target = self.index.first_table_target(actual)
            if target:
                scope.rename_targets.setdefault(actual, target)
        # Tables referenced without qualified columns (SELECT *, COUNT(*), bare names).
        for table in tables:
            name = table.name.lower()
            if name not in scope.rename_targets:
                target = self.index.first_table_target(name)
                if target:
                    scope.rename_targets[name] = target

    # ------------------------------------------------------------------
    # Rewrite
    # ------------------------------------------------------------------

    def _rewrite_tables(self, scope: _SelectScope, select: exp.Select, tables: list[exp.Table]) -> None:
        for table in tables:
            old_name = table.name.lower()
            new_name = scope.rename_targets.get(old_name)
            if not new_name:
                continue
            self.replacements[old_name] = new_name
            table.set("this", exp.to_identifier(new_name))
            scope.alias_to_table[(table.alias or new_name).lower()] = new_name.lower()
            self.has_changes = True
        # JOIN ... ON predicates are outside the analyzed clauses
        for join in select.args.get("joins") or []:
            for column in list(_qualified_columns(join.args.get("on"))):
                self._rewrite_column(scope, column)

    def _rewrite_column(self, scope: _SelectScope, column: exp.Column) -> None:
        qualifier = column.table.lower()
        original = scope.alias_to_original.get(qualifier, qualifier)
        new_table = scope.rename_targets.get(original)
        if isinstance(column.this, exp.Star):
            if new_table:
                column.set("table", exp.to_identifier(new_table))
                self.has_changes = True
            return

        name = column.name
        key = f"{original}.{name}"
        if new_table:
            self.replacements[key] = f"{new_table}.{name}"
            column.set("table", exp.to_identifier(new_table))
            self.has_changes = True

        entry = self.index.field_mapping(original, name)
        if entry is not None:
            # Same key as the table-only rename above: the field-level value overwrites it.
            self.replacements[key] = f"{entry.new_table}.{entry.new_field}"
            column.set("this", exp.to_identifier(entry.new_field))
            if entry.new_table.lower() != column.table.lower():
                column.set("table", exp.to_identifier(entry.new_table))
            self.has_changes = True


# -----------------------------------------------------------------------------
# Naming conventions
# -----------------------------------------------------------------------------


def capitalize(text: str) -> str:
    """'orderNUMBER' -> 'Ordernumber'."""
    if not text:
        return text
    return text[0].upper() + text[1:].lower()


def singularize(text: str) -> str:
    if not text:
        return text
    lower = text.lower()
    if lower.endswith("ies") and len(text) > 3:
        return text[:-3] + ("Y" if text[-3].isupper() else "y")
    if lower.endswith("sses"):
        return text[:-2]
    if lower.endswith(("xes", "ches", "shes")):
        return text[:-2]
    if lower.endswith("s") and not lower.endswith(("ss", "us", "is")):
        return text[:-1]
    return text


def generate_alias(table: str) -> str:
    """First three letters of the table name, lower-cased."""
    cleaned = (table or "").strip()
    return cleaned[:3].lower()


def assign_aliases(targets: list[str]) -> list[tuple[str, str]]:
    """
    (table, alias) pairs for the target tables of one source table.
    Several targets: shortest name first, and a repeated 3-letter prefix gets a, b, c, ... appended.
    """
    if len(targets) == 1:
        return [(targets[0], generate_alias(targets[0]))]
    assigned: list[tuple[str, str]] = []
    taken: set[str] = set()
    for table in sorted(targets, key=len):
        base = generate_alias(table)
        alias = base
        if alias in taken:
            alias = next(base + c for c in string.ascii_lowercase if base + c not in taken)
        taken.add(alias)
        assigned.append((table, alias))
    return assigned


# -----------------------------------------------------------------------------
# Formatting-preserving rewriter
# -----------------------------------------------------------------------------


@dataclass
class _ColumnReplacement:
    key: str
    old_table: str
    old_column: str
    new_table: str
    new_column: str

    @property
    def renames_column(self) -> bool:
        return self.old_column.lower() != self.new_column.lower()


def _classify_replacements(
    replacements: dict[str, str],
) -> tuple[dict[str, str], list[_ColumnReplacement], dict[str, str]]:
    """Split a replacement log into table renames, qualified column renames and alias-style identifiers."""
    tables: dict[str, str] = {}
    columns: list[_ColumnReplacement] = []
    identifiers: dict[str, str] = {}
    for old, new in replacements.items():
        if "." in old and "." in new:
            old_table, old_column = old.split(".", 1)
            new_table, new_column = new.split(".", 1)
            columns.append(_ColumnReplacement(old, old_table, old_column, new_table, new_column))
            old_ident = capitalize(old_table) + capitalize(old_column)
            new_ident = capitalize(new_table) + capitalize(new_column)
            if old_ident.lower() != new_ident.lower():
                identifiers[old_ident] = new_ident
        elif "." not in old:
            tables[old.lower()] = new
    return tables, columns, identifiers


def _group_targets(tables: dict[str, str], columns: list[_ColumnReplacement]) -> dict[str, list[str]]:
    """Source table (lower) -> distinct target tables in first-appearance order."""
    grouped: dict[str, list[str]] = {}

    def add(source: str, target: str) -> None:
        bucket = grouped.setdefault(source.lower(), [])
        if target.lower() not in {t.lower() for t in bucket}:
            bucket.append(target)

    for source, target in tables.items():
        add(source, target)
    for col in columns:
        add(col.old_table, col.new_table)
    return grouped


def _from_join_pattern(table: str) -> re.Pattern:
    keywords = "|".join(_CLAUSE_KEYWORDS)
    return re.compile(
        r"\b(FROM|JOIN)\s+(" + re.escape(table) + r")(?![\w.])"
        r"(?:\s+(?:AS\s+)?(?!(?:" + keywords + r")\b)(" + _IDENT + r"))?",
        re.IGNORECASE,
    )


def _qualifier_pattern(qualifiers: Iterable[str], column: str) -> re.Pattern:
    names = sorted({q for q in qualifiers if q}, key=len, reverse=True)
    return re.compile(
        r"(?<![\w.])(?:" + "|".join(re.escape(n) for n in names) + r")(\s*)\.(\s*)(" + re.escape(column) + r")\b",
        re.IGNORECASE,
    )


# Line comments, block comments and single-quoted literals ('' escapes a quote).
_NON_CODE_RE = re.compile(r"--[^\n]*|/\*.*?\*/|'(?:[^']|'')*'", re.DOTALL)
_PLACEHOLDER = "\ue000"  # private-use character, never part of an identifier
_PLACEHOLDER_RE = re.compile(_PLACEHOLDER + r"(\d+)" + _PLACEHOLDER)


def _mask_non_code(sql: str) -> tuple[str, list[str]]:
    """Swap comments and string literals for placeholders so the rewrite passes only see SQL code."""
    segments: list[str] = []

    def _stash(m: re.Match) -> str:
        segments.append(m.group(0))
        return f"{_PLACEHOLDER}{len(segments) - 1}{_PLACEHOLDER}"

    return _NON_CODE_RE.sub(_stash, sql), segments


def _restore_non_code(sql: str, segments: list[str]) -> str:
    if not segments:
        return sql
    return _PLACEHOLDER_RE.sub(lambda m: segments[int(m.group(1))], sql)


def _insert_joins(sql: str, joins: list[str]) -> str:
    """Place synthetic JOINs before the first WHERE, else at the end of the statement."""
    if not joins:
        return sql
    where = re.search(r"\bWHERE\b", sql, re.IGNORECASE)
    if where:
        block = "".join(j + "\n" for j in joins)
        return sql[: where.start()] + block + sql[where.start():]
    body = sql.rstrip()
    tail = sql[len(body):]
    terminator = ""
    if body.endswith(";"):
        body, terminator = body[:-1].rstrip(), ";"
    return body + "\n" + "\n".join(joins) + terminator + tail


def apply_replacements(original: str, replacements: dict[str, str], synthesize_joins: bool = True) -> str:
    """
    Rewrite the ORIGINAL query text from a replacement log, keeping formatting and comments.

    A: classify log entries (tables / qualified columns / alias-style identifiers such as AmendmentId)
    B: assign new aliases per source table (3-letter prefix; a, b, ... suffix inside a split)
    C: rewrite FROM/JOIN clauses, add JOINs for secondary targets of a split table
    D: single-target batches only: global '<old alias>.' -> '<new alias>.'
    E: per-column routing, longest key first, then the leftover '<new alias>.<old column>' pass
    F: '<alias>.<column> AS <name>': drop AS for renamed columns, else regenerate the name

    synthesize_joins=False keeps only the primary target of each source table (no JOINs added).
    Comments and string literals are never rewritten.
    """
    if not original or not replacements:
        return original
    result, segments = _mask_non_code(original)

    # Step A
    tables, columns, identifiers = _classify_replacements(replacements)
    grouped = _group_targets(tables, columns)
    if not synthesize_joins:
        grouped = {source: targets[:1] for source, targets in grouped.items()}
    single_target = all(len(targets) == 1 for targets in grouped.values())

    # Step B
    assignments = {source: assign_aliases(targets) for source, targets in grouped.items()}
    target_alias: dict[tuple[str, str], str] = {
        (source, table.lower()): alias for source, pairs in assignments.items() for table, alias in pairs
    }

    # Step C
    source_aliases: dict[str, list[str]] = {}
    old_to_new_alias: dict[str, str] = {}
    alias_targets: dict[str, str] = {}
    joins: list[str] = []
    for source, pairs in assignments.items():
        primary, primary_alias = pairs[0]
        found: list[str] = []

        def _rewrite_clause(m: re.Match) -> str:
            found.append(m.group(3) or m.group(2))
            return f"{m.group(1)} {primary} {primary_alias}"

        result = _from_join_pattern(source).sub(_rewrite_clause, result)
        if not found:
            continue
        source_aliases[source] = list(dict.fromkeys(found))
        for old_alias in source_aliases[source]:
            old_to_new_alias[old_alias.lower()] = primary_alias
        for table, alias in pairs:
            alias_targets[alias.lower()] = table

        if len(pairs) > 1:
            id_column = next(
                (c.new_column for c in columns
                 if c.old_table.lower() == source and c.old_column.lower() == "id"
                 and c.new_table.lower() == primary.lower()),
                "Id",
            )
            foreign_key = singularize(primary) + capitalize(id_column)
            for table, alias in pairs[1:]:
                joins.append(f"JOIN {table} {alias} ON {primary_alias}.{id_column} = {alias}.{foreign_key}")
                log.debug("[REWRITE] %s split: synthetic join to %s (%s)", source, table, alias)
    result = _insert_joins(result, joins)

    # Step D
    if single_target and old_to_new_alias:
        names = sorted(old_to_new_alias, key=len, reverse=True)
        alias_re = re.compile(r"(?<![\w.])(" + "|".join(re.escape(n) for n in names) + r")(\s*)\.", re.IGNORECASE)
        result = alias_re.sub(lambda m: old_to_new_alias[m.group(1).lower()] + m.group(2) + ".", result)

    # Step E
    def _new_alias(col: _ColumnReplacement) -> str:
        source = col.old_table.lower()
        alias = target_alias.get((source, col.new_table.lower()))
        if alias is None and source in assignments:
            alias = assignments[source][0][1]
        return alias or generate_alias(col.new_table)

    renamed_columns: set[tuple[str, str]] = set()
    ordered: list[Union[_ColumnReplacement, tuple[str, str]]] = list(columns) + list(identifiers.items())
    ordered.sort(key=lambda item: len(item.key if isinstance(item, _ColumnReplacement) else item[0]), reverse=True)
    for item in ordered:
        if not isinstance(item, _ColumnReplacement):
            old_ident, new_ident = item
            ident_re = re.compile(r"(?<![\w.])" + re.escape(old_ident) + r"\b", re.IGNORECASE)
            result = ident_re.sub(lambda m, new=new_ident: new, result)
            continue
        col = item
        alias = _new_alias(col)
        if col.renames_column:
            renamed_columns.add((alias.lower(), col.new_column.lower()))

        def _route(m: re.Match, alias: str = alias, col: _ColumnReplacement = col) -> str:
            name = col.new_column if col.renames_column else m.group(3)
            return f"{alias}{m.group(1)}.{m.group(2)}{name}"

        qualifiers = [col.old_table] + source_aliases.get(col.old_table.lower(), [])
        result = _qualifier_pattern(qualifiers, col.old_column).sub(_route, result)
        result = _qualifier_pattern([col.new_table], col.new_column).sub(_route, result)

    if single_target:
        for col in (c for c in columns if c.renames_column):
            alias = _new_alias(col)
            leftover = _qualifier_pattern([alias], col.old_column)
            result = leftover.sub(lambda m, a=alias, c=col: f"{a}{m.group(1)}.{m.group(2)}{c.new_column}", result)

    # Step F
    as_re = re.compile(
        r"(?<![\w.])(" + _IDENT + r")(\s*\.\s*)(" + _IDENT + r")(\s+AS\s+)(" + _IDENT + r")\b", re.IGNORECASE
    )

    def _rename_as(m: re.Match) -> str:
        alias, column = m.group(1), m.group(3)
        target = alias_targets.get(alias.lower())
        if target is None or _CAST_OPEN_RE.search(m.string, 0, m.start()):
            return m.group(0)
        if (alias.lower(), column.lower()) in renamed_columns:
            return f"{alias}{m.group(2)}{column}"
        return f"{alias}{m.group(2)}{column}{m.group(4)}{capitalize(singularize(target))}{capitalize(column)}"

    return _restore_non_code(as_re.sub(_rename_as, result), segments)


# -----------------------------------------------------------------------------
# Fallback direct rewriter
# -----------------------------------------------------------------------------


def _mentions(sql: str, name: str) -> bool:
    code, _ = _mask_non_code(sql)
    return re.search(r"(?<![\w])" + re.escape(name) + r"\b", code, re.IGNORECASE) is not None


def fallback_replacements(sql: str, entries: Iterable[Optional[MappingEntry]]) -> dict[str, str]:
    """Replacement log built from mapping rows whose deprecated table appears in the text."""
    relevant = [
        e for e in entries
        if e is not None and e.deprecated_table and e.new_table and _mentions(sql, e.deprecated_table)
    ]
    replacements: dict[str, str] = {}
    for entry in relevant:
        if entry.is_table_level:
            replacements.setdefault(entry.deprecated_table.lower(), entry.new_table)
    for entry in relevant:
        if entry.is_field_level and entry.new_field:
            replacements.setdefault(entry.deprecated_table.lower(), entry.new_table)
            replacements[f"{entry.deprecated_table.lower()}.{entry.deprecated_field}"] = (
                f"{entry.new_table}.{entry.new_field}"
            )
    return replacements


def rewrite_direct(sql: str, entries: Iterable[Optional[MappingEntry]]) -> str:
    """Best-effort text substitution for SQL that sqlglot cannot parse. Single target per table."""
    replacements = fallback_replacements(sql or "", entries)
    if not replacements:
        return sql
    return apply_replacements(sql, replacements, synthesize_joins=False)


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------


def migrate_query(
    record: QueryRecord,
    index: MappingIndex,
    entries: list[MappingEntry],
    dialect: Optional[str] = None,
) -> QueryRecord:
    """Migrate one record in place: structural first, direct substitution when parsing fails."""
    original = record.original_query or ""
    outcome = parse_select(sanitize_sql(original), dialect)

    if isinstance(outcome, ParsedQuery):
        try:
            result = StructuralMigrator(index).migrate(outcome.tree)
            updated = apply_replacements(original, result.replacements) if result.has_changes else None
        except Exception as e:
            outcome = Unparsable(f"structural migration failed: {type(e).__name__}: {e}")
        else:
            if result.has_changes:
                record.updated_query = updated
                record.impacted = True
                record.strategy = STRATEGY_STRUCTURAL
                log.debug("[QUERY] '%s' impacted (%d replacement(s))", record.name, len(result.replacements))
            else:
                log.debug("[QUERY] '%s' not impacted", record.name)
            return record

    log.warning("[PARSE] '%s' could not be parsed (%s), attempting fallback replacement", record.name, outcome.reason)
    try:
        updated = rewrite_direct(original, entries)
    except Exception as e:
        log.error("[FALLBACK] '%s' failed: %s", record.name, e)
        record.status = f"error: {e}"
        return record
    if updated != original:
        record.updated_query = updated
        record.impacted = True
        record.strategy = STRATEGY_FALLBACK
        log.info("[FALLBACK] '%s' updated via direct replacement", record.name)
    else:
        log.debug("[FALLBACK] '%s' unchanged (no deprecated objects found)", record.name)
    return record


def migrate_queries(
    records: list[QueryRecord],
    entries: Iterable[Optional[MappingEntry]],
    workers: int = 1,
    dialect: Optional[str] = None,
) -> list[QueryRecord]:
    """Migrate a batch. Records are updated in place and returned in input order."""
    mappings = [e for e in entries if e is not None]
    index = build_mapping_index(mappings)
    log.info(
        "[MAPPING] %d field mapping(s), %d table(s) with table-level mappings",
        len(index.field_mappings), len(index.table_mappings),
    )

    if workers <= 1 or len(records) <= 1:
        for record in records:
            migrate_query(record, index, mappings, dialect)
    else:
        results_by_i: list[Optional[QueryRecord]] = [None] * len(records)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(migrate_query, record, index, mappings, dialect): i
                for i, record in enumerate(records)
            }
            for fut in as_completed(futures):
                results_by_i[futures[fut]] = fut.result()
        records = [results_by_i[i] for i in range(len(records))]

    n_impacted = sum(1 for r in records if r.impacted)
    log.info("[QUERY] Migration complete: %d of %d queries impacted", n_impacted, len(records))
    return records


def impacted_queries(records: Iterable[QueryRecord]) -> list[QueryRecord]:
    return [r for r in records if r.impacted]


def summarize(records: Iterable[QueryRecord]) -> dict[str, int]:
    counts = {"total": 0, "impacted": 0, STRATEGY_STRUCTURAL: 0, STRATEGY_FALLBACK: 0, "errors": 0}
    for record in records:
        counts["total"] += 1
        if record.impacted:
            counts["impacted"] += 1
        if record.strategy in (STRATEGY_STRUCTURAL, STRATEGY_FALLBACK):
            counts[record.strategy] += 1
        if record.status and record.status.startswith("error"):
            counts["errors"] += 1
    return counts
