"""Command-line interface for page2md."""

from __future__ import annotations

import argparse
import sys

from .version import __version__


def _get_usage() -> str:
    return (
        f"page2md {__version__}\n"
        "Converts individual pages of the help site from PHP/HTML to Markdown.\n\n"
        "Usage:\n"
        "  page2md [--help] [--version]\n"
        "  page2md [options] SITE_PATH [SITE_PATH ...]\n\n"
        "Options:\n"
        "  --ast                        Also write pandoc's parse tree of the page (.ast)\n"
        "  --codeblock-language LANG    Language for code blocks that do not set one\n"
        "  --finalize, --overwrite      Delete the original page after converting it\n"
        "  --content-root PATH          Site content root (env PAGE2MD_CONTENT_ROOT, default: cwd)\n"
        "  --site-url URL               Local server serving the content root\n"
        "                               (env PAGE2MD_SITE_URL, default: http://localhost:8055)\n"
        "  --no-link-check              Skip the search for pages still linking to the .php page\n"
        "  --verbose                    Log pandoc commands and progress\n"
        "  --debug                      Debug logs\n\n"
        "SITE_PATH should match the URL of the page on the live site without the protocol\n"
        "or server root: for https://help.keyman.com/convert/this/page use convert/this/page"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--help", "-h", "-?", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("locations", nargs="*", help="Site-relative paths of the pages to convert")
    parser.add_argument("--ast", action="store_true", help="Write pandoc's native parse tree next to the page")
    parser.add_argument(
        "--finalize",
        "--overwrite",
        dest="finalize",
        action="store_true",
        help="Delete the original page source after conversion",
    )
    parser.add_argument(
        "--codeblock-language",
        default=None,
        help="Fallback language for fenced code blocks without one",
    )
    parser.add_argument("--content-root", default=None, help="Directory holding the site's page sources")
    parser.add_argument("--site-url", default=None, help="Base URL of the local server for the content root")
    parser.add_argument(
        "--no-link-check",
        dest="link_check",
        action="store_false",
        help="Do not search the site for links to the converted page",
    )
    parser.add_argument("--verbose", action="store_true", help="Verbose progress logs")
    parser.add_argument("--debug", action="store_true", help="Debug logs")
    return parser


def _print_link_report(result) -> None:
    if not result.referencing_pages:
        return
    print()
    print(f"Paths detected with possible link to {result.paths.source}:")
    for path in result.referencing_pages:
        print(f"- {path}")


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        print(_get_usage())
        return 2

    if not argv or args.help:
        print(_get_usage())
        return 0

    if args.version:
        print(__version__)
        return 0

    if args.ast and args.finalize:
        print(
            "--ast and --finalize are both set. AST mode is meant for diagnosing conversion issues, "
            "so the original page is kept. Aborting.",
            file=sys.stderr,
        )
        return 6

    if not args.locations:
        print(_get_usage())
        print("At least one SITE_PATH is required", file=sys.stderr)
        return 6

    try:
        from page2md import core
    except Exception as exc:
        print(f"Unable to import page2md core: {exc}", file=sys.stderr)
        return 6

    core.setup_logging(args.verbose, args.debug)

    layout = core.SiteLayout.from_env(args.content_root, args.site_url)
    if not layout.content_root.is_dir():
        print(f"Content root not found: {layout.content_root}", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    try:
        core.check_prerequisites()
    except core.ConversionError as exc:
        print(str(exc), file=sys.stderr)
        return exc.exit_code

    if not core.check_site_available(layout.site_url):
        core.LOG.warning("No server answered at %s; pandoc will not be able to fetch pages", layout.site_url)

    options = core.ConversionOptions(
        ast=bool(args.ast),
        finalize=bool(args.finalize),
        codeblock_language=args.codeblock_language,
        verbose=bool(args.verbose),
        debug=bool(args.debug),
        link_check=bool(args.link_check),
    )
    core.LOG.info("Paths: %s", ", ".join(args.locations))
    core.LOG.info("Options: %s", options)
    core.LOG.info("Content root: %s (served at %s)", layout.content_root, layout.site_url)

    for location in args.locations:
        try:
            result = core.convert_page(location, layout, options)
        except core.ConversionError as exc:
            print(str(exc), file=sys.stderr)
            return exc.exit_code
        _print_link_report(result)
        if result.deleted_source:
            print(f"Deleted {result.paths.source}.")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
