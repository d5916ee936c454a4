#!/usr/bin/env python3
"""
ppaper: An academic-paper document structuring tool.

This script turns a Markdown (or PDF-extracted text) paper into a structured
JSON document: metadata, abstract and keywords, a tree of sections holding
typed content blocks, and a normalized reference list. It can also serve the
same parse pipeline over HTTP.
"""

import argparse
import logging
import os
import re
import sys

# --- Dependency Imports ---
try:
    from rich.console import Console
    from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
    from rich.tree import Tree
except ImportError as e:
    print(f"Error: Missing required library. -> {e}")
    print("Please install all core dependencies with:")
    print("pip install requests rich flask waitress Pillow")
    sys.exit(1)

# --- Local Application Imports ---
from core.llm_utils import ChatCompletionClient
from core.log_utils import ContextFilter, setup_logging
from ppaper_lib.app import DEFAULT_CONFIG_PATH, create_app
from ppaper_lib.models import save_json
from ppaper_lib.orchestrator import ParseJob
from ppaper_lib.services.config_service import ConfigService
from ppaper_lib.services.image_service import ImageService

app_log = logging.getLogger("ppaper")


# --- CUSTOM ARGPARSE FORMATTER ---
class CustomHelpFormatter(
    argparse.ArgumentDefaultsHelpFormatter, argparse.RawTextHelpFormatter
):
    """
    A custom argparse formatter that combines showing default values with
    preserving newline formatting in help text.
    """

    pass


class Application:
    """Runs a single parse, or the API server, based on command-line arguments."""

    def __init__(self, args):
        self.args = args
        self.console = Console(stderr=True)

    def run(self) -> int:
        """Main entry point for the application logic. Returns the exit code."""
        setup_logging(
            project_name="ppaper",
            level=logging.INFO if self.args.verbose else logging.WARNING,
            color_logs=self.args.color_logs,
            debug_topics=self.args.debug_topics,
            log_file=self.args.log_file,
        )
        config_service = ConfigService(self.args.config)
        settings = config_service.get_settings()
        options = config_service.get_parse_options(settings)
        options.update(self._option_overrides())

        if self.args.serve:
            return self._serve(options)
        if not self.args.input_file:
            app_log.error("An input file is required unless --serve is given.")
            return 1
        return self._parse_file(settings, options)

    def _option_overrides(self) -> dict:
        overrides = {
            "mode": self.args.mode,
            "max_chunk_tokens": self.args.max_tokens,
            "overlap_tokens": self.args.overlap,
        }
        for flag, key in (
            ("translate", "translate"),
            ("fix_math", "fix_inline_math"),
            ("filter_noise", "filter_noise"),
        ):
            if getattr(self.args, flag):
                overrides[key] = True
        return {k: v for k, v in overrides.items() if v is not None}

    def _parse_file(self, settings: dict, options: dict) -> int:
        path = self.args.input_file
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
        stem = os.path.splitext(os.path.basename(path))[0]
        doc_id = re.sub(r"[^\w-]+", "-", stem)[:64].strip("-") or "document"

        client = ChatCompletionClient(settings)
        if not client.is_configured():
            client = None
            if options["mode"] == "llm":
                app_log.error("LLM mode needs [LLM] url, model and api_key (or $LLM_API_KEY).")
                return 1

        context = ContextFilter(doc_id)
        for handler in logging.getLogger().handlers:
            handler.addFilter(context)

        job = ParseJob(
            doc_id,
            text,
            options,
            client=client,
            image_service=ImageService(options["image_dir"]) if self.args.images else None,
        )
        with Progress(
            TextColumn("[bold sky_blue2]{task.description:<60}"),
            BarColumn(),
            TaskProgressColumn(),
            console=self.console,
            transient=not self.args.verbose,
        ) as bar:
            task = bar.add_task("Preparing to parse...", total=100)
            job.on_progress = lambda p: bar.update(task, completed=p.percentage, description=p.message)
            try:
                stats = job.run()
            except Exception as e:
                # job.run has already logged and recorded the failure
                self.console.print(f"[bold red]Parse failed:[/] {job.progress.error or e}")
                return 1

        output = self.args.output_file or f"{doc_id}.json"
        save_json(job.document, output)
        self._display_outline(job.document, stats, output)
        return 0

    def _display_outline(self, document, stats: dict, output: str):
        tree = Tree(f"[bold]{document.metadata.title}[/]")
        self._add_sections(tree, document.sections)
        console = Console()
        console.print(tree)
        console.print(
            f"{stats['sectionsCount']} sections, {stats['referencesCount']} references, "
            f"{stats['figuresCount']} figures in {stats['duration']:.2f}s -> {output}"
        )

    def _add_sections(self, node, sections):
        for section in sections:
            title = section.title.en or section.title.zh or "(preamble)"
            label = f"{section.number} {title}" if section.number else title
            child = node.add(f"{label} [grey50]({len(section.content)} blocks)[/]")
            self._add_sections(child, section.subsections)

    def _serve(self, options: dict) -> int:
        overrides = {"CONFIG_PATH": self.args.config, "PARSE_OPTIONS": options}
        try:
            app = create_app(overrides)
        except Exception as e:
            app_log.critical("Failed to create the application: %s", e, exc_info=True)
            return 1

        from waitress import serve

        app_log.warning("Serving ppaper API at http://%s:%d", self.args.host, self.args.port)
        try:
            serve(app, host=self.args.host, port=self.args.port, channel_timeout=600)
        finally:
            app.job_manager.shutdown(wait=False, cancel_pending=True)
        return 0

    @staticmethod
    def parse_arguments(args=None):
        """Parses command-line arguments for the script."""
        examples = [
            "\nExamples:",
            "  python ppaper.py paper.md -o paper.json",
            "  python ppaper.py paper.md --mode llm --translate -v",
            "  python ppaper.py paper.md -d chunk,merge --color-logs",
            "  python ppaper.py --serve --port 5000",
        ]
        parser = argparse.ArgumentParser(
            description="An academic-paper document structuring tool.",
            formatter_class=CustomHelpFormatter,
            add_help=False,
            epilog="\n".join(examples),
        )

        g_opts = parser.add_argument_group("Main Options")
        g_opts.add_argument("input_file", nargs="?", help="Markdown or text file to parse.")
        g_opts.add_argument(
            "-h",
            "--help",
            action="help",
            help="Show this help message and exit.",
        )
        g_opts.add_argument(
            "-c",
            "--config",
            default=DEFAULT_CONFIG_PATH,
            metavar="PATH",
            help="Configuration file. (default: %(default)s)",
        )

        g_proc = parser.add_argument_group("Processing Control")
        g_proc.add_argument(
            "--mode",
            choices=["local", "llm"],
            default=None,
            help="Parse chunks with the local grammar or the completion service.",
        )
        g_proc.add_argument(
            "--max-tokens",
            type=int,
            default=None,
            metavar="N",
            help="Maximum estimated tokens per chunk.",
        )
        g_proc.add_argument(
            "--overlap",
            type=int,
            default=None,
            metavar="N",
            help="Tokens of trailing sentence carried into the next chunk.",
        )
        g_proc.add_argument(
            "--translate",
            action="store_true",
            help="Translate the abstract, titles and paragraphs (requires LLM).",
        )
        g_proc.add_argument(
            "--fix-math",
            action="store_true",
            help="Repair inline math expressions (requires LLM).",
        )
        g_proc.add_argument(
            "--filter-noise",
            action="store_true",
            help="Drop PDF extraction noise (copyright lines, page numbers).",
        )
        g_proc.add_argument(
            "--images",
            action="store_true",
            help="Download remote figure images into the image directory.",
        )

        g_srv = parser.add_argument_group("Server")
        g_srv.add_argument("--serve", action="store_true", help="Run the HTTP API server.")
        g_srv.add_argument("--host", default="127.0.0.1", help="Server host.")
        g_srv.add_argument("--port", type=int, default=5000, help="Server port.")

        g_out = parser.add_argument_group("Script Output & Actions")
        g_out.add_argument(
            "-o",
            "--output-file",
            default=None,
            metavar="FILE",
            help="Save the structured JSON. Defaults to the input name.",
        )
        g_out.add_argument(
            "--log-file",
            metavar="FILE",
            default=None,
            help="Redirect all logging output to a specified file.",
        )
        g_out.add_argument(
            "--color-logs",
            action="store_true",
            help="Enable colored logging output. (default: %(default)s)",
        )
        g_out.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="Enable INFO logging for detailed progress. (default: %(default)s)",
        )
        g_out.add_argument(
            "-d",
            "--debug",
            nargs="?",
            const="all",
            dest="debug_topics",
            metavar="TOPICS",
            help="Enable DEBUG logging (all,scan,detect,tree,chunk,markup,merge,"
            "meta,refs,job,llm,images,storage,config,api).",
        )

        return parser.parse_args(args)


def main():
    """Main entry point for the script."""
    # Basic logging config for early errors before full setup
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    try:
        args = Application.parse_arguments(sys.argv[1:])
        sys.exit(Application(args).run())
    except FileNotFoundError as e:
        app_log.critical(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        app_log.info("\nProcess interrupted by user. Exiting.")
        sys.exit(0)


if __name__ == "__main__":
    main()
