"""Shared fixtures: a scripted stand-in for Apple's command-line tools."""

import json
import shutil
import struct
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from pluginpack import STAPLER_VALID_MARKER, Credentials

CPU_TYPE_X86_64 = 0x01000007
CPU_TYPE_ARM64 = 0x0100000C
MH_MAGIC_64 = 0xFEEDFACF
MH_DYLIB = 6

IDENTITY = "Developer ID Application: John Doe (ABCDE12345)"
PROFILE = "AC_PROFILE"


def write_macho(path: Path, cputype: int = CPU_TYPE_ARM64) -> None:
    """Write a minimal little-endian 64-bit Mach-O dylib header."""
    path.write_bytes(
        struct.pack("<IiiIIIII", MH_MAGIC_64, cputype, 0, MH_DYLIB, 0, 0, 0, 0)
    )


class FakeTools:
    """Scripted replacement for subprocess.run.

    Records every command, answers the status probes from the `signed`
    and `notarized` sets, and emulates the filesystem side effects of
    ditto and hdiutil so later steps find their inputs.
    """

    def __init__(self):
        self.calls: list[list[str]] = []
        self.signed: set[str] = set()
        self.notarized: set[str] = set()
        self.failures: dict[str, int] = {}
        self.failing_targets: set[str] = set()
        self.verdict = "Accepted"

    @staticmethod
    def kind(command: list[str]) -> str:
        tool = command[0]
        if tool == "codesign":
            return "verify" if "--strict" in command else "codesign"
        if tool == "ditto":
            return "zip" if "-c" in command else "copy"
        if tool == "xcrun":
            return {"notarytool": "submit"}.get(command[1], command[2])
        return Path(tool).name

    def __call__(self, command, *args, **kwargs):
        command = list(command)
        self.calls.append(command)
        kind = self.kind(command)

        if kind in self.failures:
            return MagicMock(
                returncode=self.failures[kind], stdout="", stderr="boom"
            )
        if kind == "codesign" and command[-1] in self.failing_targets:
            return MagicMock(returncode=1, stdout="", stderr="boom")
        if kind == "verify":
            ok = command[-1] in self.signed
            return MagicMock(returncode=0 if ok else 1, stdout="", stderr="")
        if kind == "validate":
            if command[-1] in self.notarized:
                stdout = f"Processing: {command[-1]}\n{STAPLER_VALID_MARKER}!"
                return MagicMock(returncode=0, stdout=stdout, stderr="")
            return MagicMock(returncode=65, stdout="", stderr="no ticket")
        if kind == "submit":
            stdout = json.dumps(
                {"id": "abc-123", "status": self.verdict, "message": "done"}
            )
            return MagicMock(returncode=0, stdout=stdout, stderr="")
        if kind == "zip":
            Path(command[-1]).write_bytes(b"PK fake zip")
        elif kind == "copy":
            shutil.copytree(command[-2], command[-1], symlinks=True)
        elif kind == "hdiutil":
            Path(command[-1]).write_bytes(b"fake dmg")
        return MagicMock(returncode=0, stdout="", stderr="")

    def of_kind(self, *kinds: str) -> list[list[str]]:
        return [c for c in self.calls if self.kind(c) in kinds]

    def mutating(self) -> list[list[str]]:
        """Every call that signs, archives, submits or staples."""
        return self.of_kind("codesign", "zip", "submit", "staple", "hdiutil")


@pytest.fixture
def fake_tools():
    """Patch subprocess.run with a FakeTools instance."""
    tools = FakeTools()
    with patch("subprocess.run", side_effect=tools):
        yield tools


@pytest.fixture
def temp_dir(monkeypatch):
    """Temporary working area; also redirects tempfile.gettempdir()."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        root = Path(tmpdirname)
        scratch = root / "scratch"
        scratch.mkdir()
        monkeypatch.setattr(tempfile, "tempdir", str(scratch))
        yield root


@pytest.fixture
def credentials():
    return Credentials(IDENTITY, PROFILE)


def make_bundle(root: Path, name: str, with_dylibs: bool = False) -> Path:
    """Create a minimal plugin bundle directory."""
    bundle = root / name
    macos = bundle / "Contents" / "MacOS"
    macos.mkdir(parents=True)
    (macos / Path(name).stem).write_bytes(b"\x00" * 2048)
    (bundle / "Contents" / "Info.plist").write_text("<plist></plist>")
    if with_dylibs:
        frameworks = bundle / "Contents" / "Frameworks"
        frameworks.mkdir()
        write_macho(frameworks / "libfoo.dylib", CPU_TYPE_ARM64)
        write_macho(frameworks / "libbar.dylib", CPU_TYPE_X86_64)
    return bundle


@pytest.fixture
def vst3_bundle(temp_dir):
    return make_bundle(temp_dir, "Synth.vst3", with_dylibs=True)


@pytest.fixture
def component_bundle(temp_dir):
    return make_bundle(temp_dir, "Synth.component")


@pytest.fixture
def app_bundle(temp_dir):
    return make_bundle(temp_dir, "Synth.app")
