#!/usr/bin/env python3
"""
Session Settings Helper Tool

Interactive tool to help proctors create and validate session settings files.
"""

import json
import sys
from dataclasses import asdict
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from examshield.config_loader import SessionSettings, create_sample_config, load_config


def describe_settings(settings: SessionSettings):
    """Print the effective settings and what they mean for a candidate."""
    print("Settings:")
    for key, value in asdict(settings).items():
        print(f"  {key}: {value}")
    print()
    print(f"  Warnings at 1-{settings.warn_threshold} violations")
    print(f"  Final warning at {settings.warn_threshold + 1}-{settings.auto_submit_threshold - 1} violations")
    print(f"  Auto-submit at {settings.auto_submit_threshold} violations")
    worst_case = settings.persistence_retries * settings.persistence_timeout_seconds
    print(f"  A save gives up after at most ~{worst_case:.0f}s (plus backoff)")
    print()


def validate_settings_file(settings_path: Path) -> bool:
    """Validate an existing settings file."""
    print("=" * 60)
    print("SETTINGS VALIDATOR")
    print("=" * 60)
    print(f"\nValidating: {settings_path}\n")

    if not settings_path.exists():
        print(f"Error: File '{settings_path}' not found.")
        return False

    try:
        settings = load_config(settings_path)
    except ValueError as e:
        print("✗ Settings are INVALID!")
        print(f"  Error: {e}")
        return False

    describe_settings(settings)
    print("✓ Settings are VALID!")
    return True


def create_settings_interactive() -> dict:
    """Ask for the escalation thresholds and keep the other defaults."""
    defaults = SessionSettings()
    warn = input(f"  Warning threshold (default: {defaults.warn_threshold}): ").strip()
    auto = input(f"  Auto-submit threshold (default: {defaults.auto_submit_threshold}): ").strip()
    language = input(f"  Default language (default: {defaults.default_language}): ").strip()

    data = asdict(defaults)
    if warn:
        data["warn_threshold"] = int(warn)
    if auto:
        data["auto_submit_threshold"] = int(auto)
    if language:
        data["default_language"] = language.lower()

    is_valid, error_message = SessionSettings.from_dict(data).validate()
    if not is_valid:
        raise ValueError(error_message)
    return data


def main():
    """Main entry point."""
    print("\n" + "=" * 60)
    print("SESSION SETTINGS HELPER TOOL")
    print("=" * 60)
    print("\nOptions:")
    print("  1. Create new settings")
    print("  2. Validate existing settings")
    print("  3. Write sample settings with explanations")
    print("  4. Exit")
    print()

    try:
        choice = input("Enter your choice (1-4): ").strip()

        if choice == '1':
            print()
            data = create_settings_interactive()
            save_path = Path.cwd() / "settings.json"
            if save_path.exists():
                overwrite = input("File exists. Overwrite? (y/n): ").strip().lower()
                if overwrite != 'y':
                    print("Cancelled.")
                    return 0

            with open(save_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            print(f"\n✓ Settings saved to: {save_path}\n")
            validate_settings_file(save_path)

        elif choice == '2':
            print()
            settings_file = input("Enter settings file path (default: settings.json): ").strip()
            return 0 if validate_settings_file(Path(settings_file or "settings.json")) else 1

        elif choice == '3':
            create_sample_config(Path.cwd() / "settings.sample.json")

        elif choice == '4':
            print("Goodbye!")
            return 0

        else:
            print("Invalid choice.")
            return 1

    except ValueError as e:
        print(f"Error: Invalid input - {e}")
        return 1
    except (KeyboardInterrupt, EOFError):
        print("\n\nExiting.")
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
