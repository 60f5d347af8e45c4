#!/usr/bin/env python3
"""AST node generator.

Input:  a base type name plus a grammar table of "Variant : Type field, ..." lines.
Output: one source file per base type with a visitor interface, one immutable
        node class per variant, and the accept() dispatch glue between them.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import os
import pathlib
import re
import stat
import sys
import tempfile
from typing import Callable, Dict, List, NoReturn, Optional, Sequence, Tuple

GENERATOR_VERSION = "0.1.0"
EX_USAGE = 64
IDENTIFIER = re.compile(r"[A-Za-z_]\w*")

DEFAULT_GRAMMARS: Dict[str, List[str]] = {
    "Expr": [
        "Binary   : Expr left, Token operator, Expr right",
        "Grouping : Expr expression",
        "Literal  : Object value",
        "Unary    : Token operator, Expr right",
    ],
}


class DescriptorError(ValueError):
    def __init__(self, message: str, line: Optional[str] = None) -> None:
        super().__init__(message)
        self.line = line


@dataclasses.dataclass(frozen=True)
class FieldSpec:
    type_tag: str  # copied verbatim into the output
    name: str


@dataclasses.dataclass(frozen=True)
class VariantSpec:
    name: str
    fields: Tuple[FieldSpec, ...] = ()


@dataclasses.dataclass(frozen=True)
class Descriptor:
    base_name: str
    variants: Tuple[VariantSpec, ...]


def parse_field(decl: str, raw_line: str) -> FieldSpec:
    parts = decl.strip().split(None, 1)
    if len(parts) != 2:
        raise DescriptorError(f"expected '<type> <name>' field declaration, got '{decl.strip()}'", raw_line)
    type_tag, name = parts
    if not IDENTIFIER.fullmatch(name):
        raise DescriptorError(f"invalid field name '{name}'", raw_line)
    return FieldSpec(type_tag=type_tag, name=name)


def parse(raw_line: str) -> VariantSpec:
    """Parse one "Name : Type field, Type field" descriptor line."""
    if raw_line.count(":") != 1:
        raise DescriptorError("descriptor must contain exactly one ':'", raw_line)

    head, field_list = raw_line.split(":")
    name = head.strip()
    if not IDENTIFIER.fullmatch(name):
        raise DescriptorError(f"invalid variant name '{name}'", raw_line)

    fields: List[FieldSpec] = []
    seen: set[str] = set()
    field_list = field_list.strip()
    if field_list:
        for decl in field_list.split(", "):
            field = parse_field(decl, raw_line)
            if field.name in seen:
                raise DescriptorError(f"duplicate field '{field.name}' in variant '{name}'", raw_line)
            seen.add(field.name)
            fields.append(field)

    return VariantSpec(name=name, fields=tuple(fields))


def parse_table(lines: Sequence[str]) -> Tuple[VariantSpec, ...]:
    if not lines:
        raise DescriptorError("grammar table must contain at least one variant")

    variants: List[VariantSpec] = []
    seen: set[str] = set()
    for raw_line in lines:
        variant = parse(raw_line)
        if variant.name in seen:
            raise DescriptorError(f"duplicate variant '{variant.name}'", raw_line)
        seen.add(variant.name)
        variants.append(variant)
    return tuple(variants)


def parse_descriptor(base_name: str, lines: Sequence[str]) -> Descriptor:
    if not IDENTIFIER.fullmatch(base_name):
        raise DescriptorError(f"invalid base type name '{base_name}'")
    try:
        variants = parse_table(lines)
    except DescriptorError as e:
        raise DescriptorError(f"{base_name}: {e}", e.line) from e
    return Descriptor(base_name=base_name, variants=variants)


def visit_method_name(base_name: str, variant: VariantSpec) -> str:
    return f"visit{variant.name}{base_name}"


# Java


def render_visitor(base_name: str, variants: Sequence[VariantSpec]) -> str:
    param = base_name.lower()
    lines: List[str] = []
    lines.append("  interface Visitor<R> {")
    for variant in variants:
        lines.append(f"    R {visit_method_name(base_name, variant)}({variant.name} {param});")
    lines.append("  }")
    return "\n".join(lines)


def render_variant(base_name: str, variant: VariantSpec) -> str:
    params = ", ".join(f"{f.type_tag} {f.name}" for f in variant.fields)

    lines: List[str] = []
    lines.append(f"  static class {variant.name} extends {base_name} {{")
    lines.append(f"    {variant.name}({params}) {{")
    for field in variant.fields:
        lines.append(f"      this.{field.name} = {field.name};")
    lines.append("    }")
    lines.append("")
    lines.append("    @Override")
    lines.append("    <R> R accept(Visitor<R> visitor) {")
    lines.append(f"      return visitor.{visit_method_name(base_name, variant)}(this);")
    lines.append("    }")
    if variant.fields:
        lines.append("")
        for field in variant.fields:
            lines.append(f"    final {field.type_tag} {field.name};")
    lines.append("  }")
    return "\n".join(lines)


def render_java_file(descriptor: Descriptor, package: str) -> str:
    base_name = descriptor.base_name
    lines: List[str] = []
    lines.append(f"package {package};")
    lines.append("")
    lines.append("import java.util.List;")
    lines.append("")
    lines.append("")
    lines.append(f"abstract class {base_name} {{")
    lines.append("")
    lines.append(render_visitor(base_name, descriptor.variants))
    lines.append("")
    lines.append("")
    for variant in descriptor.variants:
        lines.append(render_variant(base_name, variant))
        lines.append("")
        lines.append("")
    lines.append("  abstract <R> R accept(Visitor<R> visitor);")
    lines.append("}")
    return "\n".join(lines) + "\n"


# Python


def render_py_visitor(base_name: str, variants: Sequence[VariantSpec]) -> str:
    param = base_name.lower()
    lines: List[str] = []
    lines.append("    class Visitor(abc.ABC, Generic[R]):")
    for i, variant in enumerate(variants):
        if i:
            lines.append("")
        lines.append("        @abc.abstractmethod")
        lines.append(f"        def {visit_method_name(base_name, variant)}(self, {param}: {variant.name}) -> R:")
        lines.append("            ...")
    return "\n".join(lines)


def render_py_variant(base_name: str, variant: VariantSpec) -> str:
    lines: List[str] = []
    lines.append("@dataclass(frozen=True)")
    lines.append(f"class {variant.name}({base_name}):")
    for field in variant.fields:
        # Quoted so that foreign tags like List<Expr> stay inert.
        lines.append(f"    {field.name}: {field.type_tag!r}")
    if variant.fields:
        lines.append("")
    lines.append(f"    def accept(self, visitor: {base_name}.Visitor[R]) -> R:")
    lines.append(f"        return visitor.{visit_method_name(base_name, variant)}(self)")
    return "\n".join(lines)


def render_py_file(descriptor: Descriptor, package: str) -> str:
    base_name = descriptor.base_name
    lines: List[str] = []
    lines.append(f"# Generated by ast_gen {GENERATOR_VERSION} from the {base_name} grammar. Do not edit.")
    lines.append("")
    lines.append("from __future__ import annotations")
    lines.append("")
    lines.append("import abc")
    lines.append("from dataclasses import dataclass")
    lines.append("from typing import Generic, TypeVar")
    lines.append("")
    lines.append('R = TypeVar("R")')
    lines.append("")
    lines.append("")
    lines.append(f"class {base_name}(abc.ABC):")
    lines.append(render_py_visitor(base_name, descriptor.variants))
    lines.append("")
    lines.append("    @abc.abstractmethod")
    lines.append(f"    def accept(self, visitor: {base_name}.Visitor[R]) -> R:")
    lines.append("        ...")
    for variant in descriptor.variants:
        lines.append("")
        lines.append("")
        lines.append(render_py_variant(base_name, variant))
    return "\n".join(lines) + "\n"


TARGETS: Dict[str, Tuple[str, Callable[[Descriptor, str], str]]] = {
    "java": ("java", render_java_file),
    "python": ("py", render_py_file),
}


def render_file(descriptor: Descriptor, target: str = "java", package: str = "lox") -> str:
    _, render = TARGETS[target]
    return render(descriptor, package)


def output_path(output_dir: pathlib.Path, base_name: str, target: str = "java") -> pathlib.Path:
    ext, _ = TARGETS[target]
    return pathlib.Path(output_dir) / f"{base_name}.{ext}"


def output_mode(path: pathlib.Path) -> int:
    """Mode for a regenerated file: keep the old file's bits, else honour the umask."""
    try:
        return stat.S_IMODE(os.stat(path).st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def stage_file(path: pathlib.Path, text: str) -> str:
    """Write text to a temp file beside path and return the temp file's name."""
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
        os.chmod(tmp_name, output_mode(path))
    except BaseException:
        pathlib.Path(tmp_name).unlink(missing_ok=True)
        raise
    return tmp_name


def commit_file(tmp_name: str, path: pathlib.Path) -> None:
    try:
        os.replace(tmp_name, path)
    except BaseException:
        pathlib.Path(tmp_name).unlink(missing_ok=True)
        raise


def write_atomic(path: pathlib.Path, text: str) -> None:
    """Write text to a sibling temp file, then rename it over path."""
    commit_file(stage_file(path, text), path)


def generate(
    output_dir: pathlib.Path,
    base_name: str,
    lines: Sequence[str],
    target: str = "java",
    package: str = "lox",
) -> pathlib.Path:
    descriptor = parse_descriptor(base_name, lines)
    out_path = output_path(output_dir, base_name, target)
    write_atomic(out_path, render_file(descriptor, target, package))
    return out_path


def unique_object(pairs: List[Tuple[str, object]]) -> Dict[str, object]:
    result: Dict[str, object] = {}
    for key, value in pairs:
        if key in result:
            raise DescriptorError(f"duplicate base name '{key}'")
        result[key] = value
    return result


def load_grammars(path: pathlib.Path) -> Dict[str, List[str]]:
    try:
        text = path.read_bytes().decode("utf-8")
    except UnicodeDecodeError as e:
        raise DescriptorError(f"{path}: not valid UTF-8: {e}") from e
    try:
        data = json.loads(text, object_pairs_hook=unique_object)
    except DescriptorError as e:
        raise DescriptorError(f"{path}: {e}") from e
    except json.JSONDecodeError as e:
        raise DescriptorError(f"{path}:{e.lineno}:{e.colno}: invalid JSON: {e.msg}") from e

    if not isinstance(data, dict) or not data:
        raise DescriptorError(f"{path}: expected an object mapping base names to descriptor lists")
    for base_name, lines in data.items():
        if not isinstance(lines, list) or not all(isinstance(line, str) for line in lines):
            raise DescriptorError(f"{path}: '{base_name}' must map to a list of descriptor strings")
    return data


def fail(error: DescriptorError) -> None:
    where = f" in {error.line!r}" if error.line is not None else ""
    print(f"error: {error}{where}", file=sys.stderr)


def check(rendered: Sequence[Tuple[pathlib.Path, str]]) -> int:
    status = 0
    for out_path, text in rendered:
        if not out_path.exists():
            print(f"{out_path} is missing (run generator)", file=sys.stderr)
            status = 1
            continue
        try:
            existing = out_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            print(f"error: cannot read {out_path}: {getattr(e, 'strerror', None) or e}", file=sys.stderr)
            status = 1
            continue
        if existing != text:
            print(f"{out_path} is out of date (run generator)", file=sys.stderr)
            status = 1
            continue
        print(f"up-to-date: {out_path}")
    return status


def run(args: argparse.Namespace) -> int:
    output_dir = pathlib.Path(args.output_dir)

    try:
        grammars = load_grammars(pathlib.Path(args.grammar)) if args.grammar else DEFAULT_GRAMMARS
        descriptors = [parse_descriptor(base_name, lines) for base_name, lines in grammars.items()]
    except DescriptorError as e:
        fail(e)
        return 1
    except OSError as e:
        print(f"error: cannot read grammar file {args.grammar}: {e.strerror or e}", file=sys.stderr)
        return 1

    # Every table is parsed and rendered before the first file is touched.
    rendered = [
        (output_path(output_dir, d.base_name, args.lang), render_file(d, args.lang, args.package))
        for d in descriptors
    ]

    if args.check:
        return check(rendered)

    # All outputs are staged before any is renamed into place.
    staged: List[Tuple[str, pathlib.Path]] = []
    out_path = output_dir
    try:
        for out_path, text in rendered:
            staged.append((stage_file(out_path, text), out_path))
        while staged:
            tmp_name, out_path = staged.pop(0)
            commit_file(tmp_name, out_path)
            print(f"generated: {out_path}")
    except OSError as e:
        print(f"error: cannot write {out_path}: {e.strerror or e}", file=sys.stderr)
        return 1
    finally:
        for tmp_name, _ in staged:
            pathlib.Path(tmp_name).unlink(missing_ok=True)
    return 0


class UsageArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EX_USAGE, f"{self.prog}: error: {message}\n")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = UsageArgumentParser(
        prog="generate_ast",
        description="Generate visitor-based AST node classes from grammar tables",
    )
    parser.add_argument("output_dir", help="Directory receiving <BaseName>.<ext>")
    parser.add_argument("--grammar", help="JSON file mapping base names to descriptor lists")
    parser.add_argument("--lang", choices=sorted(TARGETS), default="java", help="Target language")
    parser.add_argument("--package", default="lox", help="Java package for generated files")
    parser.add_argument("--check", action="store_true", help="Check outputs are up to date")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    return run(build_arg_parser().parse_args(argv))


if __name__ == "__main__":
    raise SystemExit(main())
