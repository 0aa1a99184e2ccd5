#!/usr/bin/env python3
"""
verify_bank.py - Validate an exam bank and decrypt it for inspection.

Usage with key file:
    python tools/verify_bank.py --bank banks/exams.enc --key-file COURSE.key

Usage with password:
    python tools/verify_bank.py --bank banks/exams.enc --password

Usage with plaintext:
    python tools/verify_bank.py --bank exams.json
"""

import argparse
import getpass
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from examshield.bank import load_bank
from examshield.models import format_timestamp


def verify_bank(bank_file: str, key_file: str = None, use_password: bool = False, verbose: bool = False) -> bool:
    """
    Verify an exam bank (encrypted or plaintext).
    Returns True if valid, False otherwise.
    """
    bank_path = Path(bank_file)
    key_input = None

    if bank_path.suffix.lower() != '.json':
        if use_password:
            key_input = getpass.getpass("Enter decryption password: ")
        elif key_file:
            with open(key_file, 'r', encoding='utf-8') as f:
                key_input = f.read().strip()
        else:
            print("[ERROR] Encrypted bank requires --key-file or --password", file=sys.stderr)
            return False

    try:
        exams = load_bank(bank_path, key_input)
    except OSError as e:
        print(f"[ERROR] Cannot read bank: {e}", file=sys.stderr)
        return False
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return False

    print(f"[OK] Bank loaded: {len(exams)} exam(s)")
    print(f"{'=' * 60}")

    warnings = []
    for exam in exams:
        print(f"\n[EXAM] {exam.exam_id} - {exam.name or '(no name)'}")
        if exam.exam_code:
            print(f"  Code: {exam.exam_code}")
        print(f"  Window: {format_timestamp(exam.live_at) or 'open'} -> {format_timestamp(exam.dead_at) or 'open'}")
        print(f"  Max attempts: {exam.max_attempts}")
        print(f"  MCQ questions: {len(exam.questions)}")
        print(f"  Coding questions: {len(exam.coding_questions)}")

        for number, question in enumerate(exam.questions, start=1):
            if question.correct_option is None:
                warnings.append(f"{exam.exam_id} Q{number}: no option marked correct")
            if verbose:
                print(f"    Q{number} [{question.question_id}] {question.text}")

        for number, coding in enumerate(exam.coding_questions, start=1):
            if verbose:
                print(f"    C{number} ({coding.duration_minutes} min) {coding.prompt}")

        if exam.live_at is None or exam.dead_at is None:
            warnings.append(f"{exam.exam_id}: exam window is open-ended")

    if warnings:
        print(f"\n[WARNINGS]")
        for warning in warnings:
            print(f"  [!] {warning}")

    print(f"\n[OK] Bank is valid")
    return True


def main():
    parser = argparse.ArgumentParser(description="Validate an exam bank and print a summary.")
    parser.add_argument("--bank", required=True, help="Bank file (.enc or .json)")
    parser.add_argument("--key-file", help="Key file for key-encrypted banks")
    parser.add_argument("--password", action="store_true", help="Prompt for the bank password")
    parser.add_argument("-v", "--verbose", action="store_true", help="List every question")

    args = parser.parse_args()

    ok = verify_bank(args.bank, args.key_file, args.password, args.verbose)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
