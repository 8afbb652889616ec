import sys
from collections.abc import Callable
from pathlib import Path

import pytest

PROJECT_DIR = Path(__file__).resolve().parent.parent
if str(PROJECT_DIR) not in sys.path:
    sys.path.insert(0, str(PROJECT_DIR))

import rawgen  # noqa: E402


@pytest.fixture
def config() -> rawgen.GenerateConfig:
    return rawgen.GenerateConfig(formatter=())


@pytest.fixture
def make_enum() -> Callable[..., rawgen.Datatype]:
    def _make_enum(
        name: str, variants: list[str], repr: str = "u8"
    ) -> rawgen.Datatype:
        return rawgen.Datatype(
            name, rawgen.EnumDatatype(rawgen.IntRepr(repr), tuple(variants))
        )

    return _make_enum


@pytest.fixture
def make_flags() -> Callable[..., rawgen.Datatype]:
    def _make_flags(name: str, flags: list[str], repr: str = "u8") -> rawgen.Datatype:
        return rawgen.Datatype(
            name, rawgen.FlagsDatatype(rawgen.IntRepr(repr), tuple(flags))
        )

    return _make_flags


@pytest.fixture
def make_alias() -> Callable[[str, rawgen.DatatypeIdent], rawgen.Datatype]:
    def _make_alias(name: str, to: rawgen.DatatypeIdent) -> rawgen.Datatype:
        return rawgen.Datatype(name, rawgen.AliasDatatype(to))

    return _make_alias


@pytest.fixture
def make_struct() -> Callable[..., rawgen.Datatype]:
    def _make_struct(
        name: str, members: list[tuple[str, rawgen.DatatypeIdent]]
    ) -> rawgen.Datatype:
        return rawgen.Datatype(
            name,
            rawgen.StructDatatype(
                tuple(rawgen.StructMember(m_name, m_type) for m_name, m_type in members)
            ),
        )

    return _make_struct


@pytest.fixture
def wasi_document(
    make_enum: Callable[..., rawgen.Datatype],
    make_flags: Callable[..., rawgen.Datatype],
    make_alias: Callable[[str, rawgen.DatatypeIdent], rawgen.Datatype],
    make_struct: Callable[..., rawgen.Datatype],
) -> rawgen.Document:
    """A small slice of the wasi snapshot covering every datatype kind."""
    size = make_alias("size", rawgen.builtin("u32"))
    errno = make_enum("errno", ["success", "2big", "acces"], repr="u16")
    rights = make_flags("rights", ["fd_datasync", "fd_read"], repr="u64")
    fd = rawgen.Datatype("fd", rawgen.HandleDatatype())
    iovec = make_struct(
        "iovec",
        [("buf", rawgen.pointer(rawgen.builtin("u8"))), ("buf_len", rawgen.named(size))],
    )
    iovec_array = make_alias("iovec_array", rawgen.array(rawgen.named(iovec)))
    fdstat = make_struct(
        "fdstat",
        [("fs_rights_base", rawgen.named(rights)), ("fs_flags", rawgen.builtin("u16"))],
    )

    module = rawgen.Module(
        "wasi_snapshot_preview1",
        (
            rawgen.make_func(
                "fd_read",
                params=[("fd", rawgen.named(fd)), ("iovs", rawgen.named(iovec_array))],
                results=[("error", rawgen.named(errno)), ("nread", rawgen.named(size))],
            ),
            rawgen.make_func(
                "fd_fdstat_get",
                params=[("fd", rawgen.named(fd)), ("stat", rawgen.named(fdstat))],
                results=[("error", rawgen.named(errno))],
            ),
            rawgen.make_func("proc_exit", params=[("rval", rawgen.builtin("u32"))]),
        ),
    )
    return rawgen.Document(
        datatypes=(size, errno, rights, fd, iovec, iovec_array, fdstat),
        modules=(module,),
    )
