"""Shared pytest fixtures for forgeloop tests."""

import os
import textwrap
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def isolated_settings_env(monkeypatch, tmp_path):
    """Keep FORGELOOP_* variables and stray .env files out of tests."""
    for key in list(os.environ):
        if key.startswith("FORGELOOP_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Small TypeScript-flavored workspace."""
    root = tmp_path / "ws"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.ts").write_text(
        textwrap.dedent("""\
        import { greet } from './greet';

        export function main(): void {
          const message = greet('world');
          process.stdout.write(message);
        }
        """)
    )
    (root / "src" / "greet.ts").write_text(
        textwrap.dedent("""\
        export function greet(name: string): string {
          return `Hello, ${name}`;
        }
        """)
    )
    return root
