#!/usr/bin/env python3
"""
build_bank.py - Validate and encrypt plaintext JSON exam banks.

Usage with key file:
    python tools/build_bank.py --generate-key COURSE.key
    python tools/build_bank.py --in exams.json --out banks/exams.enc --key-file COURSE.key

Usage with password:
    python tools/build_bank.py --in exams.json --out banks/exams.enc --password
"""

import argparse
import getpass
import hashlib
import json
import sys
from pathlib import Path
from cryptography.fernet import Fernet

sys.path.insert(0, str(Path(__file__).parent.parent))

from examshield.bank import encrypt_bank, parse_bank


def generate_key(output_file: str) -> None:
    """Generate a new Fernet key and save it to file."""
    key = Fernet.generate_key()
    with open(output_file, 'wb') as f:
        f.write(key)

    print(f"[OK] Success: Encryption key generated")
    print(f"  Output: {output_file}")
    print(f"\n[!] SECURITY: Store this key securely. Never commit to version control.")


def build_bank(in_file: str, out_file: str, key_file: str = None, use_password: bool = False) -> None:
    """Encrypt a plaintext JSON exam bank."""
    try:
        with open(in_file, 'r', encoding='utf-8') as f:
            bank_data = json.load(f)

        # Verify the exams before encrypting
        exams = parse_bank(bank_data)
        print(f"[OK] Input JSON validated")
        for exam in exams:
            print(
                f"  {exam.exam_id}: {len(exam.questions)} MCQ, "
                f"{len(exam.coding_questions)} coding, max attempts {exam.max_attempts}"
            )

        if use_password:
            password = getpass.getpass("Enter encryption password: ")
            password_confirm = getpass.getpass("Confirm password: ")

            if password != password_confirm:
                print("[ERROR] Passwords do not match", file=sys.stderr)
                sys.exit(1)

            if len(password) < 8:
                print("[ERROR] Password must be at least 8 characters", file=sys.stderr)
                sys.exit(1)

            final_data = encrypt_bank(bank_data, password=password)
        else:
            with open(key_file, 'rb') as f:
                key = f.read().strip()
            final_data = encrypt_bank(bank_data, key=key)

        sha256_hash = hashlib.sha256(final_data).hexdigest()

        Path(out_file).parent.mkdir(parents=True, exist_ok=True)
        with open(out_file, 'wb') as f:
            f.write(final_data)

        print(f"\n[OK] Success: Bank encrypted")
        print(f"  Output: {out_file} ({len(final_data)} bytes)")
        print(f"  Method: {'Password-based' if use_password else 'Key file'}")
        print(f"  SHA256: {sha256_hash}")

    except FileNotFoundError as e:
        print(f"[ERROR] File not found: {e}", file=sys.stderr)
        sys.exit(1)
    except json.JSONDecodeError as e:
        print(f"[ERROR] Invalid JSON in input file: {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"[ERROR] Invalid bank: {e}", file=sys.stderr)
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description="Validate and encrypt a plaintext JSON exam bank.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python tools/build_bank.py --generate-key COURSE.key
  python tools/build_bank.py --in exams.json --out banks/exams.enc --key-file COURSE.key
  python tools/build_bank.py --in exams.json --out banks/exams.enc --password

Notes:
  - Input file must be valid JSON of the form {"exams": [...]}
  - Output directory will be created if it doesn't exist
  - Produces SHA256 checksum for verification
        """
    )
    parser.add_argument("--generate-key", metavar="KEY_FILE", help="Generate a new key file and exit")
    parser.add_argument("--in", dest="in_file", help="Input plaintext JSON file")
    parser.add_argument("--out", help="Output encrypted bank file (.enc)")
    parser.add_argument(
        "--key-file",
        help="File containing the encryption key (mutually exclusive with --password)"
    )
    parser.add_argument(
        "--password",
        action="store_true",
        help="Use password-based encryption instead of key file"
    )

    args = parser.parse_args()

    if args.generate_key:
        generate_key(args.generate_key)
        return

    if not args.in_file or not args.out:
        print("[ERROR] --in and --out are required", file=sys.stderr)
        sys.exit(1)

    if args.password and args.key_file:
        print("[ERROR] Cannot use both --password and --key-file", file=sys.stderr)
        sys.exit(1)

    if not args.password and not args.key_file:
        print("[ERROR] Must specify either --password or --key-file", file=sys.stderr)
        sys.exit(1)

    build_bank(args.in_file, args.out, args.key_file, args.password)


if __name__ == "__main__":
    main()
