#!/usr/bin/env python3
"""
core/log_utils.py: Logging setup shared by the CLI and the API server.
This module contains:
- setup_logging: Installs console/file handlers and per-topic debug levels.
- ContextFilter: Adds the document id being parsed to log records.
- RichLogFormatter: A custom logging formatter for colorful console output.
"""

import logging

PROJECT_TOPICS = {
    "ppaper": {
        "scan",
        "detect",
        "tree",
        "chunk",
        "markup",
        "merge",
        "meta",
        "refs",
        "job",
        "llm",
        "images",
        "storage",
        "config",
        "api",
    },
}
NOISY_LIBRARIES = ("werkzeug", "urllib3", "PIL", "waitress")


def resolve_topics(project_name: str, debug_topics: str) -> set:
    """Expands a comma list of topic prefixes ('all' for every topic) to full names."""
    valid_topics = PROJECT_TOPICS.get(project_name, set())
    user_topics = [t.strip() for t in debug_topics.split(",") if t.strip()]
    if "all" in user_topics:
        return set(valid_topics)
    return {full for u in user_topics for full in valid_topics if full.startswith(u)}


def setup_logging(
    project_name: str,
    level=logging.INFO,
    color_logs=False,
    debug_topics=None,
    include_projects: list[str] = None,
    log_file: str = None,
):
    """Configures logging for the application."""
    root_logger = logging.getLogger()
    if root_logger.hasHandlers():
        for h in root_logger.handlers[:]:
            root_logger.removeHandler(h)
            h.close()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(RichLogFormatter(use_color=color_logs))
    root_logger.addHandler(console_handler)
    root_logger.setLevel(level)

    if log_file:
        try:
            file_handler = logging.FileHandler(log_file, mode="w")
            # File logs should not be colored
            file_handler.setFormatter(RichLogFormatter(use_color=False))
            root_logger.addHandler(file_handler)
            logging.getLogger(project_name).info("Logging to file: %s", log_file)
        except IOError as e:
            logging.getLogger(project_name).error(
                "Could not open log file %s: %s", log_file, e
            )

    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    if debug_topics:
        for proj in [project_name] + (include_projects or []):
            for topic in resolve_topics(proj, debug_topics):
                logging.getLogger(f"{proj}.{topic}").setLevel(logging.DEBUG)


class ContextFilter(logging.Filter):
    """
    A logging filter that injects contextual information, such as the id of
    the document being parsed, into log records.
    """

    def __init__(self, context_str=""):
        super().__init__()
        self.context_str = context_str

    def filter(self, record):
        record.context = self.context_str
        return True


class RichLogFormatter(logging.Formatter):
    """A logging formatter for colored, aligned console output.

    Every line of a message is prefixed with the level and the logger topic
    (the part of the logger name after the project name).
    Args:
        use_color (bool): If True, ANSI color codes are used. Defaults to False.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[38;5;252m",
        logging.INFO: "\033[38;5;111m",
        logging.WARNING: "\033[38;5;229m",
        logging.ERROR: "\033[38;5;210m",
        logging.CRITICAL: "\033[38;5;217m",
    }

    def __init__(self, use_color=False):
        super().__init__()
        self.use_color = use_color
        self.BOLD = "\033[1m" if use_color else ""
        self.RESET = "\033[0m" if use_color else ""

    def format(self, record):
        color = self.LEVEL_COLORS.get(record.levelno, "") if self.use_color else ""
        level_name = record.levelname[:5]

        name_parts = record.name.split(".")
        topic = name_parts[1][:7] if len(name_parts) > 1 else record.name[:7]

        context = getattr(record, "context", "")
        context_str = f"[{context}]" if context else ""

        prefix = (
            f"{color}{level_name:<5}{self.RESET}:"
            f"{self.BOLD}{topic:<7}{self.RESET}{context_str}: "
        )
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return "\n".join(f"{prefix}{line}" for line in message.split("\n"))
