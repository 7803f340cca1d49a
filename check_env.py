#!/usr/bin/env python3
"""
Environment Check
=================
Verifies that packages, API keys, and data directories are in place for the
council meeting ingestion pipeline. Optionally runs an interactive wizard
that writes API keys into ``.env``.

Usage:
    python check_env.py           # check everything
    python check_env.py --wizard  # interactive setup
"""

from __future__ import annotations

import argparse
import importlib
import os
import subprocess
import sys
from pathlib import Path

from config import API_CONFIG, CHUNKS_DIR, DATA_DIR


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

# import name -> pip name
REQUIRED_PACKAGES = {
    "requests": "requests",
    "dotenv": "python-dotenv",
    "yt_dlp": "yt-dlp",
    "youtube_transcript_api": "youtube-transcript-api",
    "tenacity": "tenacity",
}

KEY_HINTS = {
    "anthropic": ("Recaps", "https://console.anthropic.com/"),
    "openai": ("Embeddings and search", "https://platform.openai.com/api-keys"),
}


def check_python_version() -> bool:
    major, minor = sys.version_info[:2]
    ok = (major, minor) >= (3, 10)
    status = "OK" if ok else "FAIL"
    print(f"  [{status}] Python version: {major}.{minor} (need >= 3.10)")
    return ok


def check_packages() -> tuple[bool, list[str]]:
    """Check that required Python packages import. Returns (ok, missing pip names)."""
    missing: list[str] = []
    for module_name, pip_name in REQUIRED_PACKAGES.items():
        try:
            importlib.import_module(module_name)
            print(f"  [OK] Package: {pip_name}")
        except ImportError:
            print(f"  [FAIL] Package: {pip_name} (pip install {pip_name})")
            missing.append(pip_name)
    return not missing, missing


def check_ytdlp() -> bool:
    """yt-dlp drives the caption fallback path; report its version."""
    try:
        yt_dlp = importlib.import_module("yt_dlp")
    except ImportError:
        print("  [FAIL] yt-dlp not found. Install with: pip install yt-dlp")
        return False
    print(f"  [OK] yt-dlp: {yt_dlp.version.__version__}")
    return True


def mask(value: str) -> str:
    return value[:8] + "..." + value[-4:] if len(value) > 12 else "***"


def check_api_keys() -> dict[str, bool]:
    results: dict[str, bool] = {}
    for service, cfg in API_CONFIG.items():
        env_var = cfg["api_key_env"]
        value = os.environ.get(env_var, "")
        if value:
            print(f"  [OK] {env_var}: {mask(value)}")
            results[service] = True
        else:
            feature = KEY_HINTS.get(service, (service, ""))[0]
            print(f"  [MISS] {env_var}: not set ({feature} will fail)")
            results[service] = False
    return results


def check_directories(base: Path | None = None) -> bool:
    """Create the data directories if needed."""
    data_dir = base or DATA_DIR
    chunks_dir = data_dir / "chunks" if base else CHUNKS_DIR
    for d in (data_dir, chunks_dir):
        d.mkdir(parents=True, exist_ok=True)
        print(f"  [OK] Directory: {d}")
    return True


# ---------------------------------------------------------------------------
# Setup wizard
# ---------------------------------------------------------------------------

def write_env_key(env_file: Path, env_var: str, value: str) -> None:
    """Set ``env_var`` in the .env file, replacing an existing empty entry."""
    lines = env_file.read_text().splitlines() if env_file.exists() else []
    replaced = False
    for i, line in enumerate(lines):
        if line.split("=", 1)[0].strip() == env_var:
            lines[i] = f"{env_var}={value}"
            replaced = True
    if not replaced:
        lines.append(f"{env_var}={value}")
    env_file.write_text("\n".join(lines) + "\n")


def setup_wizard(env_file: Path = Path(".env")) -> None:
    print("\n" + "=" * 60)
    print("  Council Meeting Recap – Setup Wizard")
    print("=" * 60 + "\n")

    if not env_file.exists():
        env_file.write_text(
            "# Council Meeting Recap API Keys\n"
            + "".join(f"{cfg['api_key_env']}=\n" for cfg in API_CONFIG.values())
        )
        print(f"  Created: {env_file}")
    else:
        print(f"  .env already exists: {env_file}")

    print("\n--- API Key Configuration ---")
    for service, cfg in API_CONFIG.items():
        env_var = cfg["api_key_env"]
        if os.environ.get(env_var):
            print(f"  {env_var} is already set.")
            continue

        feature, url = KEY_HINTS.get(service, (service, ""))
        print(f"\n  {service.upper()} API Key ({env_var}) – {feature}:")
        if url:
            print(f"    Get your key at: {url}")
        key = input(f"    Enter {env_var} (or press Enter to skip): ").strip()
        if key:
            write_env_key(env_file, env_var, key)
            os.environ[env_var] = key
            print("    Saved to .env")

    print("\n--- Package Installation ---")
    _, missing = check_packages()
    if missing:
        answer = input(f"\n  Install missing packages ({', '.join(missing)})? [Y/n] ").strip()
        if answer.lower() != "n":
            subprocess.run([sys.executable, "-m", "pip", "install"] + missing)
            print("  Packages installed.")

    print("\n--- Directory Setup ---")
    check_directories()

    print("\n" + "=" * 60)
    print("  Setup complete!")
    print("  Run: python meeting_ingestion_pipeline.py")
    print("=" * 60 + "\n")


# ---------------------------------------------------------------------------
# Main verification
# ---------------------------------------------------------------------------

def run_checks() -> bool:
    print("\n" + "=" * 60)
    print("  Council Meeting Recap – Environment Check")
    print("=" * 60)

    all_ok = True

    print("\n--- Python ---")
    if not check_python_version():
        all_ok = False

    print("\n--- Python Packages ---")
    pkg_ok, _ = check_packages()
    if not pkg_ok:
        all_ok = False
    if not check_ytdlp():
        all_ok = False

    print("\n--- API Keys ---")
    api_status = check_api_keys()

    print("\n--- Data Directories ---")
    check_directories()

    print("\n" + "-" * 60)
    if all_ok and all(api_status.values()):
        print("  All checks passed. Ready to run the pipeline.")
    elif all_ok:
        print("  Core dependencies OK. Set API keys to enable the full pipeline.")
        print("  Run: python check_env.py --wizard")
    else:
        print("  Some checks failed. Fix the issues above.")
        print("  Run: python check_env.py --wizard")
    print("-" * 60 + "\n")

    return all_ok


def main() -> None:
    parser = argparse.ArgumentParser(description="Environment check for the ingestion pipeline")
    parser.add_argument("--wizard", action="store_true", help="Run interactive setup wizard")
    args = parser.parse_args()

    if args.wizard:
        setup_wizard()
    else:
        sys.exit(0 if run_checks() else 1)


if __name__ == "__main__":
    main()
