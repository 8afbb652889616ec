"""Raw Rust FFI declaration generator for witx-style interface documents.

Renders an already-parsed interface document (datatypes plus modules of
functions) into `#[repr(C)]` type definitions and `extern "C"` prototypes
bound to wasm import modules, then pipes the text through rustfmt.

Usage:
    import rawgen
    source = rawgen.generate(document, rawgen.build_config())
"""

import enum
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import NamedTuple, assert_never

DEFAULT_PREFIX = "wasi"
DEFAULT_FORMATTER: tuple[str, ...] = ("rustfmt",)
DEFAULT_REGENERATE_COMMAND = "crates/generate-raw"
DEFAULT_DIVERGING_FUNCTIONS = frozenset({"proc_exit"})


# ===--- Errors ---=== #


class GenerationError(Exception):
    """Base class for failures that abort a generation run."""


class SchemaError(GenerationError):
    """The document violates an invariant the renderer relies on."""


class FormatterError(GenerationError):
    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


# ===--- Config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    """Settings for one generation run.

    Attributes:
        prefix: Namespace prefix for every emitted name, e.g. "wasi" gives
            `__wasi_fd_t`, `__WASI_ERRNO_SUCCESS` and `__wasi_fd_read`.
        formatter: argv of the formatter fed the raw text on stdin. Empty
            tuple skips formatting.
        regenerate_command: Named in the header comment as the way to
            rebuild the generated file.
        diverging_functions: Result-less functions rendered as `-> !`.
    """

    prefix: str = DEFAULT_PREFIX
    formatter: tuple[str, ...] = DEFAULT_FORMATTER
    regenerate_command: str = DEFAULT_REGENERATE_COMMAND
    diverging_functions: frozenset[str] = DEFAULT_DIVERGING_FUNCTIONS


VALID_ERROR_CODES = {
    "INVALID_PREFIX",
    "FORMATTER_NOT_FOUND",
}
_PREFIX_RE = re.compile(r"^[a-z][a-z0-9_]*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_prefix(prefix: str) -> str:
    if _PREFIX_RE.match(prefix):
        return prefix
    raise ConfigError(
        "INVALID_PREFIX",
        f"Invalid name prefix: {prefix!r}",
        "Prefixes must be lowercase identifiers (for example wasi).",
    )


def validate_formatter(formatter: tuple[str, ...]) -> tuple[str, ...]:
    if not formatter or shutil.which(formatter[0]) is not None:
        return formatter
    raise ConfigError(
        "FORMATTER_NOT_FOUND",
        f"Formatter executable not found: {formatter[0]}",
        "Install it (rustup component add rustfmt) or pass formatter=() to skip formatting.",
    )


def build_config(
    *,
    prefix: str = DEFAULT_PREFIX,
    formatter: tuple[str, ...] | list[str] = DEFAULT_FORMATTER,
    regenerate_command: str = DEFAULT_REGENERATE_COMMAND,
    diverging_functions: frozenset[str] | set[str] = DEFAULT_DIVERGING_FUNCTIONS,
) -> GenerateConfig:
    return GenerateConfig(
        prefix=validate_prefix(prefix),
        formatter=validate_formatter(tuple(formatter)),
        regenerate_command=regenerate_command,
        diverging_functions=frozenset(diverging_functions),
    )


# ===--- Document model ---=== #


class BuiltinType(enum.Enum):
    STRING = "string"
    U8 = "u8"
    U16 = "u16"
    U32 = "u32"
    U64 = "u64"
    S8 = "s8"
    S16 = "s16"
    S32 = "s32"
    S64 = "s64"
    F32 = "f32"
    F64 = "f64"


class IntRepr(enum.Enum):
    U8 = "u8"
    U16 = "u16"
    U32 = "u32"
    U64 = "u64"

    @property
    def bits(self) -> int:
        return int(self.value[1:])


@dataclass(frozen=True)
class BuiltinIdent:
    builtin: BuiltinType


@dataclass(frozen=True)
class PointerIdent:
    to: "DatatypeIdent"


@dataclass(frozen=True)
class ConstPointerIdent:
    to: "DatatypeIdent"


@dataclass(frozen=True)
class NamedIdent:
    datatype: "Datatype"


@dataclass(frozen=True)
class ArrayIdent:
    element: "DatatypeIdent"


DatatypeIdent = BuiltinIdent | PointerIdent | ConstPointerIdent | NamedIdent | ArrayIdent


@dataclass(frozen=True)
class StructMember:
    name: str
    type_: DatatypeIdent


@dataclass(frozen=True)
class UnionVariant:
    name: str
    type_: DatatypeIdent


@dataclass(frozen=True)
class AliasDatatype:
    to: DatatypeIdent


@dataclass(frozen=True)
class EnumDatatype:
    repr: IntRepr
    variants: tuple[str, ...]


@dataclass(frozen=True)
class FlagsDatatype:
    repr: IntRepr
    flags: tuple[str, ...]


@dataclass(frozen=True)
class StructDatatype:
    members: tuple[StructMember, ...]


@dataclass(frozen=True)
class UnionDatatype:
    variants: tuple[UnionVariant, ...]


@dataclass(frozen=True)
class HandleDatatype:
    pass


DatatypeVariant = (
    AliasDatatype
    | EnumDatatype
    | FlagsDatatype
    | StructDatatype
    | UnionDatatype
    | HandleDatatype
)


@dataclass(frozen=True)
class Datatype:
    name: str
    variant: DatatypeVariant


class ParamKind(enum.Enum):
    PARAM = "param"
    RESULT = "result"


class ParamPosition(NamedTuple):
    kind: ParamKind
    index: int


@dataclass(frozen=True)
class InterfaceFuncParam:
    name: str
    type_: DatatypeIdent
    position: ParamPosition


@dataclass(frozen=True)
class InterfaceFunc:
    name: str
    params: tuple[InterfaceFuncParam, ...] = ()
    results: tuple[InterfaceFuncParam, ...] = ()


@dataclass(frozen=True)
class Module:
    name: str
    funcs: tuple[InterfaceFunc, ...] = ()


@dataclass(frozen=True)
class Document:
    """A parsed interface document.

    Every NamedIdent inside the document points at one of `datatypes`.
    Declaration order of both sequences is the output order.
    """

    datatypes: tuple[Datatype, ...] = ()
    modules: tuple[Module, ...] = ()

    def datatype(self, name: str) -> Datatype:
        for datatype in self.datatypes:
            if datatype.name == name:
                return datatype
        raise KeyError(name)


def builtin(name: str) -> BuiltinIdent:
    return BuiltinIdent(BuiltinType(name))


def named(datatype: Datatype) -> NamedIdent:
    return NamedIdent(datatype)


def pointer(to: DatatypeIdent) -> PointerIdent:
    return PointerIdent(to)


def const_pointer(to: DatatypeIdent) -> ConstPointerIdent:
    return ConstPointerIdent(to)


def array(element: DatatypeIdent) -> ArrayIdent:
    return ArrayIdent(element)


def make_func(
    name: str,
    params: list[tuple[str, DatatypeIdent]] | None = None,
    results: list[tuple[str, DatatypeIdent]] | None = None,
) -> InterfaceFunc:
    """Build an InterfaceFunc from (name, type) pairs, numbering positions."""
    return InterfaceFunc(
        name=name,
        params=tuple(
            InterfaceFuncParam(p_name, p_type, ParamPosition(ParamKind.PARAM, i))
            for i, (p_name, p_type) in enumerate(params or [])
        ),
        results=tuple(
            InterfaceFuncParam(r_name, r_type, ParamPosition(ParamKind.RESULT, i))
            for i, (r_name, r_type) in enumerate(results or [])
        ),
    )


# ===--- Alias resolver ---=== #

MAX_ALIAS_DEPTH = 64


def resolve(ident: DatatypeIdent) -> DatatypeIdent:
    """Follow alias datatypes until reaching a non-alias ident."""
    for _ in range(MAX_ALIAS_DEPTH + 1):
        if not isinstance(ident, NamedIdent):
            return ident
        variant = ident.datatype.variant
        if not isinstance(variant, AliasDatatype):
            return ident
        ident = variant.to
    raise SchemaError(f"Alias chain longer than {MAX_ALIAS_DEPTH} links (cycle?)")


# ===--- Passing convention ---=== #


class PassedBy(enum.Enum):
    VALUE = "value"
    POINTER = "pointer"
    POINTER_LENGTH_PAIR = "pointer_length_pair"


def passed_by(ident: DatatypeIdent) -> PassedBy:
    ident = resolve(ident)
    if isinstance(ident, BuiltinIdent):
        if ident.builtin is BuiltinType.STRING:
            return PassedBy.POINTER_LENGTH_PAIR
        return PassedBy.VALUE
    if isinstance(ident, ArrayIdent):
        return PassedBy.POINTER_LENGTH_PAIR
    if isinstance(ident, (PointerIdent, ConstPointerIdent)):
        return PassedBy.VALUE
    if isinstance(ident, NamedIdent):
        variant = ident.datatype.variant
        if isinstance(variant, (StructDatatype, UnionDatatype)):
            return PassedBy.POINTER
        return PassedBy.VALUE
    assert_never(ident)


# ===--- Identifiers and type atoms ---=== #

BUILTIN_TO_RUST = {
    BuiltinType.STRING: "str",
    BuiltinType.U8: "u8",
    BuiltinType.U16: "u16",
    BuiltinType.U32: "u32",
    BuiltinType.U64: "u64",
    BuiltinType.S8: "i8",
    BuiltinType.S16: "i16",
    BuiltinType.S32: "i32",
    BuiltinType.S64: "i64",
    BuiltinType.F32: "f32",
    BuiltinType.F64: "f64",
}

INT_REPR_TO_RUST = {
    IntRepr.U8: "u8",
    IntRepr.U16: "u16",
    IntRepr.U32: "u32",
    IntRepr.U64: "u64",
}

USIZE = "usize"
BYTE = "u8"
HANDLE_REPR = "u32"
SIZE_ALIAS_NAME = "size"
RAW_IDENT_PREFIX = "r#"

# Keywords that are legal as raw identifiers. `crate`, `self`, `Self` and
# `super` cannot be written as `r#...` at all.
RUST_RESERVED = frozenset(
    {
        "abstract", "as", "async", "await", "become", "box", "break", "const",
        "continue", "do", "dyn", "else", "enum", "extern", "false", "final",
        "fn", "for", "gen", "if", "impl", "in", "let", "loop", "macro",
        "match", "mod", "move", "mut", "override", "priv", "pub", "ref",
        "return", "static", "struct", "trait", "true", "try", "type",
        "typeof", "unsafe", "unsized", "use", "virtual", "where", "while",
        "yield",
    }
)


def escape_identifier(name: str) -> str:
    if name in RUST_RESERVED:
        return RAW_IDENT_PREFIX + name
    return name


def unescape_identifier(text: str) -> str:
    return text.removeprefix(RAW_IDENT_PREFIX)


def to_shouty_snake_case(name: str) -> str:
    words = []
    for part in re.split(r"[^A-Za-z0-9]+", name):
        if part:
            words.append(
                re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", part)
            )
    return "_".join(words).upper()


def rust_type_name(name: str, config: GenerateConfig) -> str:
    return f"__{config.prefix}_{name}_t"


def rust_const_name(type_name: str, variant: str, config: GenerateConfig) -> str:
    return (
        f"__{config.prefix.upper()}_"
        f"{to_shouty_snake_case(type_name)}_{to_shouty_snake_case(variant)}"
    )


def rust_func_name(name: str, config: GenerateConfig) -> str:
    return f"__{config.prefix}_{name}"


def render_ident(ident: DatatypeIdent, config: GenerateConfig) -> str:
    if isinstance(ident, BuiltinIdent):
        return BUILTIN_TO_RUST[ident.builtin]
    if isinstance(ident, PointerIdent):
        return f"*mut {render_ident(ident.to, config)}"
    if isinstance(ident, ConstPointerIdent):
        return f"*const {render_ident(ident.to, config)}"
    if isinstance(ident, NamedIdent):
        return rust_type_name(ident.datatype.name, config)
    if isinstance(ident, ArrayIdent):
        raise SchemaError("Array types only appear as pointer/length parameters")
    assert_never(ident)


# ===--- Datatype renderer ---=== #


def render_alias(name: str, alias: AliasDatatype, config: GenerateConfig) -> list[str]:
    # Pointer/length types exist only as parameter pairs.
    if passed_by(alias.to) is PassedBy.POINTER_LENGTH_PAIR:
        return []
    if name == SIZE_ALIAS_NAME:
        target = USIZE
    else:
        target = render_ident(alias.to, config)
    return [f"pub type {rust_type_name(name, config)} = {target};"]


def render_enum(name: str, enum_: EnumDatatype, config: GenerateConfig) -> list[str]:
    if len(enum_.variants) > 1 << enum_.repr.bits:
        raise SchemaError(
            f"Enum {name} has {len(enum_.variants)} variants, "
            f"more than {enum_.repr.value} can number"
        )
    type_name = rust_type_name(name, config)
    lines = [f"pub type {type_name} = {INT_REPR_TO_RUST[enum_.repr]};"]
    for ordinal, variant in enumerate(enum_.variants):
        const = rust_const_name(name, variant, config)
        lines.append(f"pub const {const}: {type_name} = {ordinal};")
    return lines


def render_flags(name: str, flags: FlagsDatatype, config: GenerateConfig) -> list[str]:
    if len(flags.flags) > flags.repr.bits:
        raise SchemaError(
            f"Flags {name} has {len(flags.flags)} flags, "
            f"more than the {flags.repr.bits} bits of {flags.repr.value}"
        )
    type_name = rust_type_name(name, config)
    lines = [f"pub type {type_name} = {INT_REPR_TO_RUST[flags.repr]};"]
    for bit, flag in enumerate(flags.flags):
        const = rust_const_name(name, flag, config)
        lines.append(f"pub const {const}: {type_name} = 0x{1 << bit:x};")
    return lines


def _render_repr_c(
    keyword: str,
    name: str,
    fields: tuple[StructMember, ...] | tuple[UnionVariant, ...],
    config: GenerateConfig,
) -> list[str]:
    lines = [
        "#[repr(C)]",
        "#[derive(Copy, Clone)]",
        f"pub {keyword} {rust_type_name(name, config)} {{",
    ]
    for f in fields:
        lines.append(
            f"    pub {escape_identifier(f.name)}: {render_ident(f.type_, config)},"
        )
    lines.append("}")
    return lines


def render_struct(name: str, struct: StructDatatype, config: GenerateConfig) -> list[str]:
    return _render_repr_c("struct", name, struct.members, config)


def render_union(name: str, union: UnionDatatype, config: GenerateConfig) -> list[str]:
    return _render_repr_c("union", name, union.variants, config)


def render_handle(name: str, config: GenerateConfig) -> list[str]:
    return [f"pub type {rust_type_name(name, config)} = {HANDLE_REPR};"]


def render_datatype(datatype: Datatype, config: GenerateConfig) -> list[str]:
    """Return the declaration lines for one datatype.

    Aliases of pointer/length types render as an empty list.

    Raises:
        SchemaError: Enum or flags overflow their representation, or a field
            refers to a type that has no standalone rendering.
    """
    name = datatype.name
    variant = datatype.variant
    if isinstance(variant, AliasDatatype):
        return render_alias(name, variant, config)
    if isinstance(variant, EnumDatatype):
        return render_enum(name, variant, config)
    if isinstance(variant, FlagsDatatype):
        return render_flags(name, variant, config)
    if isinstance(variant, StructDatatype):
        return render_struct(name, variant, config)
    if isinstance(variant, UnionDatatype):
        return render_union(name, variant, config)
    if isinstance(variant, HandleDatatype):
        return render_handle(name, config)
    assert_never(variant)


# ===--- Function signature builder ---=== #


def pointer_length_element(ident: DatatypeIdent, config: GenerateConfig) -> str:
    resolved = resolve(ident)
    if isinstance(resolved, ArrayIdent):
        return render_ident(resolved.element, config)
    if isinstance(resolved, BuiltinIdent) and resolved.builtin is BuiltinType.STRING:
        return BYTE
    raise SchemaError(f"Unexpected pointer/length pair type: {resolved!r}")


def render_param(param: InterfaceFuncParam, config: GenerateConfig) -> list[str]:
    """Return the ABI parameters (one, or two for pointer/length) for a param."""
    convention = passed_by(param.type_)
    if convention is PassedBy.VALUE:
        return [f"{escape_identifier(param.name)}: {render_ident(param.type_, config)}"]
    if convention is PassedBy.POINTER:
        return [
            f"{escape_identifier(param.name)}: *mut {render_ident(param.type_, config)}"
        ]
    if convention is PassedBy.POINTER_LENGTH_PAIR:
        if param.position.kind is not ParamKind.PARAM:
            raise SchemaError(f"Result {param.name} cannot be a pointer/length pair")
        element = pointer_length_element(param.type_, config)
        return [
            f"{param.name}_ptr: *const {element}",
            f"{param.name}_len: {USIZE}",
        ]
    assert_never(convention)


def render_return_type(result: InterfaceFuncParam, config: GenerateConfig) -> str:
    convention = passed_by(result.type_)
    if convention is PassedBy.VALUE:
        return render_ident(result.type_, config)
    if convention is PassedBy.POINTER:
        return f"*mut {render_ident(result.type_, config)}"
    if convention is PassedBy.POINTER_LENGTH_PAIR:
        raise SchemaError(f"Result {result.name} cannot be a pointer/length pair")
    assert_never(convention)


def render_func(func: InterfaceFunc, config: GenerateConfig) -> list[str]:
    """Return the `#[link_name]` line and prototype for one function.

    The first result is the return value; every later result becomes a
    trailing `*mut` out-parameter the caller allocates.
    """
    abi_params: list[str] = []
    for param in func.params:
        abi_params.extend(render_param(param, config))
    for result in func.results[1:]:
        abi_params.append(
            f"{escape_identifier(result.name)}: *mut {render_ident(result.type_, config)}"
        )

    signature = f"pub fn {rust_func_name(func.name, config)}({', '.join(abi_params)})"
    if func.results:
        signature += f" -> {render_return_type(func.results[0], config)}"
    elif func.name in config.diverging_functions:
        signature += " -> !"

    return [f'#[link_name = "{func.name}"]', f"{signature};"]


# ===--- Document walker ---=== #


def render_header(config: GenerateConfig) -> list[str]:
    return [
        "// This file is automatically generated, DO NOT EDIT",
        "//",
        f"// To regenerate this file run the `{config.regenerate_command}` command",
        "",
        "#![allow(non_camel_case_types)]",
    ]


def render_module(module: Module, config: GenerateConfig) -> list[str]:
    lines = [
        f'#[link(wasm_import_module = "{module.name}")]',
        'extern "C" {',
    ]
    for func in module.funcs:
        lines.extend(f"    {line}" for line in render_func(func, config))
    lines.append("}")
    return lines


def render_document(document: Document, config: GenerateConfig) -> str:
    """Render the unformatted source for a whole document.

    Output order: header, datatypes in declaration order, then one
    `extern "C"` block per module. Declarations are separated by one blank
    line and the text ends with a newline.
    """
    lines = render_header(config)
    lines.append("")
    for datatype in document.datatypes:
        rendered = render_datatype(datatype, config)
        if rendered:
            lines.extend(rendered)
            lines.append("")
    for module in document.modules:
        lines.extend(render_module(module, config))
        lines.append("")
    return "\n".join(lines)


# ===--- Formatter ---=== #


def format_source(source: str, command: tuple[str, ...]) -> str:
    """Pipe source through an external formatter and return its stdout.

    `subprocess.run` drains stdout and stderr while feeding stdin, so large
    inputs cannot deadlock, and the child is reaped on every path.

    Raises:
        FormatterError: The executable could not be started or exited with a
            non-zero status.
    """
    try:
        result = subprocess.run(
            list(command),
            input=source,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as err:
        raise FormatterError(f"Could not run formatter {command[0]}: {err}") from err

    if result.returncode != 0:
        raise FormatterError(
            f"Formatter {command[0]} exited with status {result.returncode}",
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result.stdout


# ===--- Main generation ---=== #


def generate(document: Document, config: GenerateConfig | None = None) -> str:
    """Render a document and run it through the configured formatter.

    Raises:
        SchemaError: The document breaks a rendering invariant.
        FormatterError: The formatter failed; no partial output is returned.
    """
    if config is None:
        config = GenerateConfig()
    source = render_document(document, config)
    if not config.formatter:
        return source
    return format_source(source, config.formatter)


def run_generate(document: Document, config: GenerateConfig) -> str:
    """generate() with progress lines on stdout."""
    func_count = sum(len(m.funcs) for m in document.modules)
    print(
        f"Rendering: {len(document.datatypes)} datatypes, "
        f"{len(document.modules)} modules, {func_count} functions"
    )
    source = render_document(document, config)

    if config.formatter:
        print(f"  Formatting: {' '.join(config.formatter)}")
        source = format_source(source, config.formatter)
    else:
        print("  Formatting: skipped")

    print(f"  Output: {source.count(chr(10))} lines")
    return source
