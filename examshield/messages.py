"""
User-facing message templates.

Templates use str.format placeholders and are looked up through msg(); an
unknown key is returned as-is.
"""

MESSAGES = {
    "header": "=" * 60,
    "title": "ExamShield - Proctored Exam Session",
    "ask_enc_pass": "Enter decryption key/password for {bank}: ",
    "enc_error": "Error: A key or password is required for encrypted banks.",
    "enc_exit": "Exiting.",
    "bank_loading": "Loading exam bank...",
    "bank_success": "✓ Exam bank loaded successfully.",
    "bank_error": "Error: Failed to load or decrypt the exam bank.",
    "config_loaded": "✓ Session settings loaded from {src}",
    "config_error": "Error loading session settings: {error}",
    "admission_ok": "✓ Welcome, {student}. Attempt {attempt} of {max_attempts} for '{exam}'.",
    "admission_denied": "Cannot start exam: {error}",

    # Proctoring
    "warning": "Please focus on your exam.",
    "final_warning": "Final warning: If you cross 10 violations, your exam will be auto-submitted.",
    "auto_submitted": "Exam auto-submitted due to excessive cheating.",
    "time_up": "Time's up for Question {number}!",
    "terminal": "Exam finished. Your answers have been recorded.",
    "save_failed": "Could not save your exam: {error}. Please try again.",
    "log_save_failed": "Test submitted but failed to save monitoring logs",
    "violation_recorded": "Violation recorded: {category} (total {total})",

    # MCQ
    "mcq_heading": "Question {number}/{total} ({points} points)",
    "mcq_option": "  {option_id}) {text}",
    "mcq_answered": "Answer saved for question {question_id}.",
    "mcq_usage": "Usage: answer <question-number> <option-id>",
    "mcq_submitted": "✓ MCQ section submitted. Score: {score}",
    "mcq_no_coding": "This exam has no coding questions. Type 'submit' to finish.",

    # Coding
    "coding_heading": "Coding question {number}/{total}: {prompt}",
    "coding_timer": "Time remaining: {remaining} ({state})",
    "coding_loaded": "Loaded {lines} line(s) from {path}.",
    "coding_lang": "Language set to {language}.",
    "coding_run_ok": "✓ Code ran successfully. Question {number} marked as completed.",
    "coding_run_failed": "✗ Run finished with status '{status}'.",
    "goto_usage": "Usage: goto <question-number>",
    "load_usage": "Usage: load <path-to-file>",
    "lang_usage": "Usage: lang <python|javascript>",
    "violation_usage": "Usage: violation <noFace|multipleFace|cellPhone|prohibitedObject>",

    "status_heading": "Phase: {phase} | Violations: {total} | Attempt: {attempt}",
    "unknown_command": "Unknown command: '{command}'. Type 'help' for a list of commands.",
    "exit_saved": "Progress saved. Run the same command again to resume.",
    "cmd_help_violation": "  violation <category>   Report a proctoring event by hand (testing only)",
    "cmd_help": (
        "Commands:\n"
        "  questions              Show MCQ questions\n"
        "  answer <n> <option>    Answer MCQ question n\n"
        "  finish-mcq             Submit the MCQ section\n"
        "  code                   Show the current coding question\n"
        "  next / prev            Move between coding questions\n"
        "  goto <n>               Jump to coding question n\n"
        "  load <file>            Load your code from a file\n"
        "  lang <language>        Change the language of the current question\n"
        "  run                    Run the current code\n"
        "  time                   Show the current question's timer\n"
        "  status                 Show session status\n"
        "  submit                 Finish the exam\n"
        "  exit                   Save timers and quit without submitting"
    ),
}


def msg(key: str, **kwargs) -> str:
    template = MESSAGES.get(key, key)
    return template.format(**kwargs)
