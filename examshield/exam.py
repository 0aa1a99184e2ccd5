#!/usr/bin/env python3
"""
ExamShield CLI

Candidate-facing application for taking a proctored exam: admission, the
MCQ section, timed coding questions and violation-driven auto-submit.
"""

import sys
import argparse
import getpass
import json
import os
import re
import threading
import time
from pathlib import Path
from typing import Optional

from .bank import load_bank
from .config_loader import SessionSettings, load_config
from .detector_feed import DetectorFeed
from .errors import ExamError
from .messages import msg
from .models import ViolationCategory
from .session import Phase, SessionController
from .session_log import SessionLog
from .store import JsonRecordStore
from .submissions import SubmissionService
from .timers import format_seconds


def timer_state_path(data_dir: Path, exam_ref: str, student_id: str) -> Path:
    """Saved-session file of one student at one exam."""
    safe = [re.sub(r'[^A-Za-z0-9_.-]', '_', part) for part in (exam_ref, student_id)]
    return Path(data_dir) / f"timer_state_{safe[0]}_{safe[1]}.json"


class ExamRunner:
    """Main exam runner application."""

    def __init__(self):
        self.settings: Optional[SessionSettings] = None
        self.controller: Optional[SessionController] = None
        self.session_log: Optional[SessionLog] = None
        self.detector_feed: Optional[DetectorFeed] = None
        self.timer_state_path: Optional[Path] = None
        self.timer_active = False
        self.timer_thread = None
        self.manual_violations = False
        self._print_lock = threading.Lock()

    def _msg(self, key: str, **kwargs) -> str:
        return msg(key, **kwargs)

    def _print(self, text: str = ""):
        with self._print_lock:
            print(text)

    def notify(self, kind: str, message: str):
        """Show a UI effect emitted by the session controller."""
        if kind in ("warning", "final_warning", "auto_submitted", "time_up"):
            bar = "!" * 60
            self._print(f"\n{bar}\n⚠️  {message}\n{bar}")
        else:
            self._print(message)

    # ===== SETUP =====

    def _resolve_key(self, bank_path: Path) -> Optional[str]:
        if bank_path.suffix.lower() == '.json':
            return None
        try:
            key_input = getpass.getpass(self._msg("ask_enc_pass", bank=bank_path.name))
        except (KeyboardInterrupt, EOFError):
            print(f"\n{self._msg('enc_exit')}")
            return None
        if not key_input:
            print(self._msg("enc_error"))
            return None
        return key_input.strip()

    def save_timer_state(self):
        """Persist timers, code buffers and violations so an interrupted session can resume."""
        if self.controller is None or self.timer_state_path is None:
            return
        if self.controller.is_finished:
            return
        state = self.controller.snapshot()
        tmp_path = self.timer_state_path.with_suffix(".tmp")
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(state, f, indent=2)
        os.replace(tmp_path, self.timer_state_path)

    def load_timer_state(self) -> Optional[dict]:
        if self.timer_state_path is None or not self.timer_state_path.exists():
            return None
        try:
            with open(self.timer_state_path, 'r', encoding='utf-8') as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError):
            return None
        if (state.get("studentId") != self.controller.student_id
                or state.get("examRef") != self.controller.exam_ref):
            return None
        return state

    def clear_timer_state(self):
        if self.timer_state_path is not None and self.timer_state_path.exists():
            self.timer_state_path.unlink()

    def run(self) -> int:
        """Main entry point."""
        parser = argparse.ArgumentParser(
            description="ExamShield - take a proctored exam",
            formatter_class=argparse.RawDescriptionHelpFormatter
        )
        parser.add_argument("--bank", required=True, help="Exam bank file (.json or encrypted .enc)")
        parser.add_argument("--exam", required=True, help="Exam id or exam code")
        parser.add_argument("--student", required=True, help="Candidate identifier")
        parser.add_argument(
            "--data",
            default="exam_data",
            help="Directory for attempts, violation logs and the session log (default: exam_data)"
        )
        parser.add_argument(
            "--config",
            help="Path to session settings file (default: settings.json in executable directory)"
        )
        parser.add_argument("--events", help="Detector events file (JSON lines) to watch")
        parser.add_argument(
            "--manual-violations",
            action="store_true",
            help="Enable the 'violation' command for reporting events by hand (testing only)"
        )

        args = parser.parse_args()
        self.manual_violations = args.manual_violations

        print(self._msg("header"))
        print(self._msg("title"))
        print(self._msg("header"))

        try:
            config_path = Path(args.config) if args.config else None
            self.settings = load_config(config_path)
            print(self._msg("config_loaded", src=args.config or "settings.json (default)"))
        except ValueError as e:
            print(self._msg("config_error", error=e))
            return 1

        bank_path = Path(args.bank)
        key_input = self._resolve_key(bank_path)
        if key_input is None and bank_path.suffix.lower() != '.json':
            return 1

        print(f"\n{self._msg('bank_loading')}")
        try:
            exams = load_bank(bank_path, key_input)
        except (OSError, ValueError) as e:
            print(self._msg("bank_error"))
            print(f"Details: {e}")
            return 1
        print(self._msg("bank_success"))

        data_dir = Path(args.data)
        store = JsonRecordStore(data_dir, exams)
        self.session_log = SessionLog(data_dir / "session.log")
        service = SubmissionService(store, session_logger=self.session_log.log)
        self.controller = SessionController(
            args.exam,
            args.student,
            service,
            settings=self.settings,
            session_logger=self.session_log.log,
            notify=self.notify
        )
        self.timer_state_path = timer_state_path(data_dir, args.exam, args.student)

        try:
            saved = self.load_timer_state()
            if saved is not None:
                self.controller.resume(saved)
            else:
                self.controller.start()
        except ExamError as e:
            print(self._msg("admission_denied", error=e))
            return 1

        exam = self.controller.exam
        decision = self.controller.decision
        attempt = (
            self.controller.current_attempt.attempt_number if self.controller.current_attempt
            else decision.current_count + 1
        )
        print(self._msg(
            "admission_ok",
            student=args.student,
            attempt=attempt,
            max_attempts=exam.max_attempts,
            exam=exam.name or exam.exam_id
        ))

        if self.controller.phase == Phase.CODING:
            self.controller.open_coding()

        self.timer_active = True
        self.timer_thread = threading.Thread(target=self._pump_timers, daemon=True)
        self.timer_thread.start()

        if args.events:
            self.detector_feed = DetectorFeed(
                Path(args.events),
                self.controller.record_violation,
                session_logger=self.session_log.log
            )
            self.detector_feed.skip_existing()
            self.detector_feed.start_monitoring()

        try:
            self.command_loop()
        finally:
            self.timer_active = False
            if self.timer_thread and self.timer_thread.is_alive():
                self.timer_thread.join(timeout=1.0)
            if self.detector_feed:
                self.detector_feed.stop_monitoring()

        return 0

    def _pump_timers(self):
        """Background thread driving the coding question timers."""
        while self.timer_active and not self.controller.is_finished:
            self.controller.pump()
            time.sleep(min(0.25, self.settings.tick_interval_seconds))

    # ===== COMMAND LOOP =====

    def command_loop(self):
        """Main interactive command loop."""
        print("\n" + self._msg("header"))
        print(self._help_text())
        print(self._msg("header") + "\n")

        while not self.controller.is_finished:
            try:
                self.save_timer_state()

                cmd_line = input("exam> ").strip()
                if not cmd_line:
                    continue
                if self.controller.is_finished:
                    break

                parts = cmd_line.split()
                command = parts[0].lower()

                self.session_log.log("COMMAND_RUN", f"Command: {cmd_line}")

                if command in ['exit', 'quit']:
                    self.cmd_exit()
                    return
                elif command == 'help':
                    print(self._help_text())
                elif command == 'questions':
                    self.cmd_questions()
                elif command == 'answer':
                    if len(parts) < 3:
                        print(self._msg("mcq_usage"))
                    else:
                        self.cmd_answer(parts[1], parts[2])
                elif command == 'finish-mcq':
                    self.cmd_finish_mcq()
                elif command == 'code':
                    self.cmd_code()
                elif command == 'next':
                    self.controller.next_question()
                    self.cmd_code()
                elif command == 'prev':
                    self.controller.previous_question()
                    self.cmd_code()
                elif command == 'goto':
                    if len(parts) < 2 or not parts[1].isdigit():
                        print(self._msg("goto_usage"))
                    else:
                        self.controller.go_to(int(parts[1]) - 1)
                        self.cmd_code()
                elif command == 'load':
                    if len(parts) < 2:
                        print(self._msg("load_usage"))
                    else:
                        self.cmd_load(parts[1])
                elif command == 'lang':
                    if len(parts) < 2:
                        print(self._msg("lang_usage"))
                    else:
                        self.controller.set_language(parts[1])
                        print(self._msg("coding_lang", language=parts[1].lower()))
                elif command == 'run':
                    self.cmd_run()
                elif command == 'time':
                    self.cmd_time()
                elif command == 'status':
                    self.cmd_status()
                elif command == 'violation' and self.manual_violations:
                    if len(parts) < 2:
                        print(self._msg("violation_usage"))
                    else:
                        self.cmd_violation(parts[1])
                elif command == 'submit':
                    self.cmd_submit()
                else:
                    print(self._msg("unknown_command", command=command))

            except (KeyboardInterrupt, EOFError):
                print("\nUse 'exit' to save progress or 'submit' to finish the exam.")
            except (ExamError, OSError, ValueError) as e:
                print(f"Error: {e}")
                self.session_log.log("ERROR", str(e))

        self.clear_timer_state()

    def _help_text(self) -> str:
        text = self._msg("cmd_help")
        if self.manual_violations:
            text += "\n" + self._msg("cmd_help_violation")
        return text

    def cmd_exit(self):
        self.save_timer_state()
        self.session_log.log("SESSION_EXIT", "Progress saved")
        print(self._msg("exit_saved"))

    def cmd_questions(self):
        """Display the MCQ questions with the candidate's current answers."""
        exam = self.controller.exam
        chosen = {a.question_id: a.selected_option_id for a in self.controller.answers}
        total = len(exam.questions)
        for number, question in enumerate(exam.questions, start=1):
            points = question.points_if_positive or 10
            print()
            print(self._msg("mcq_heading", number=number, total=total, points=points))
            print(question.text)
            for option in question.options:
                marker = "*" if chosen.get(question.question_id) == option.option_id else " "
                print(marker + self._msg("mcq_option", option_id=option.option_id, text=option.text))
        print()

    def cmd_answer(self, number: str, option_id: str):
        questions = self.controller.exam.questions
        if not number.isdigit() or not 1 <= int(number) <= len(questions):
            print(self._msg("mcq_usage"))
            return
        question = questions[int(number) - 1]
        self.controller.answer(question.question_id, option_id)
        print(self._msg("mcq_answered", question_id=number))

    def cmd_finish_mcq(self):
        record = self.controller.finalize_mcq()
        print(self._msg("mcq_submitted", score=record.score))
        if self.controller.phase == Phase.CODING:
            self.controller.open_coding()
            self.cmd_code()
        else:
            print(self._msg("mcq_no_coding"))

    def cmd_code(self):
        """Display the current coding question and its buffer."""
        exam = self.controller.exam
        index = self.controller.current_index
        spec = exam.coding_questions[index]
        code, language = self.controller.current_code()
        print()
        print(self._msg(
            "coding_heading",
            number=index + 1,
            total=len(exam.coding_questions),
            prompt=spec.prompt
        ))
        if spec.description:
            print(spec.description)
        self.cmd_time()
        print(f"--- {language} ---")
        print(code)
        print("---")

    def cmd_load(self, path: str):
        code_path = Path(path)
        with open(code_path, 'r', encoding='utf-8') as f:
            code = f.read()
        self.controller.edit_code(code)
        print(self._msg("coding_loaded", lines=len(code.splitlines()), path=code_path))

    def cmd_run(self):
        result = self.controller.run_code()
        if result.ok:
            print(result.output)
            print(self._msg("coding_run_ok", number=self.controller.current_index + 1))
        else:
            print(result.output)
            print(self._msg("coding_run_failed", status=result.status))

    def cmd_time(self):
        timer = self.controller.time_remaining()
        if timer is None:
            return
        print(self._msg(
            "coding_timer",
            remaining=format_seconds(timer.remaining_seconds),
            state=timer.state.value
        ))

    def cmd_status(self):
        attempt = self.controller.current_attempt
        print(self._msg(
            "status_heading",
            phase=self.controller.phase.value,
            total=self.controller.violations.total(),
            attempt=attempt.attempt_number if attempt else "-"
        ))

    def cmd_violation(self, category: str):
        try:
            category = ViolationCategory(category)
        except ValueError:
            print(self._msg("violation_usage"))
            return
        self.controller.record_violation(category)
        print(self._msg(
            "violation_recorded",
            category=category.value,
            total=self.controller.violations.total()
        ))

    def cmd_submit(self):
        self.controller.finish()


def main():
    """Entry point for the exam runner."""
    runner = ExamRunner()
    sys.exit(runner.run())


if __name__ == "__main__":
    main()
