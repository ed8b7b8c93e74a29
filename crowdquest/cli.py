import argparse
import asyncio
import sys
from typing import List, Optional

from loguru import logger

from .api_client import APIClient
from .config import DEFAULT_CONFIG_PATH, load_config
from .errors import CrowdQuestError
from .generate_book import BookGenerator
from .hint_manager import NOT_FOUND_MESSAGE, HintManager, HintOutcome
from .image_processor import export_pages, load_photo
from .library_manager import JsonFileBackend, LibraryManager
from .models import AppStatus, GenerationRun
from .prompt_manager import PromptManager


def configure_logging(logging_config: dict, verbose: bool = False) -> None:
    """Log to stderr and to a rotating file."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else logging_config.get('level', 'INFO'))
    if logging_config.get('file'):
        logger.add(
            logging_config['file'],
            rotation=logging_config.get('rotation', '10 MB'),
            level=logging_config.get('level', 'INFO')
        )


def _print_progress(run: GenerationRun, last_seen: dict) -> None:
    if run.status is not AppStatus.GENERATING:
        return
    view = (run.pages_completed, run.loading_message)
    if view == last_seen.get('view'):
        return
    last_seen['view'] = view
    print(f"[{run.progress_percentage:3d}%] {run.current_label} {run.loading_message or ''}".rstrip())


def _build_library(config: dict) -> LibraryManager:
    library_config = config['library']
    return LibraryManager(JsonFileBackend(library_config['path'], library_config['key']))


def _build_generator(config: dict) -> BookGenerator:
    prompt_manager = PromptManager(config['generation'])
    api_client = APIClient(config['api'], prompt_manager)
    last_seen: dict = {}
    return BookGenerator(
        api_client,
        prompt_manager,
        config['generation'],
        on_update=lambda run: _print_progress(run, last_seen),
    )


def cmd_generate(args, config: dict) -> int:
    image_config = config['image']
    photo = load_photo(args.photo, image_config['max_dimension'], image_config['jpeg_quality'])
    generator = _build_generator(config)

    run = asyncio.run(generator.run(photo, args.theme, args.pages))

    if run.status is AppStatus.ERROR:
        print(f"Generation failed after {run.pages_completed} of {run.total_pages} pages: {run.error_message}")
    else:
        print(f"Generated {run.pages_completed} pages for '{run.theme}'")

    for page_number, page in enumerate(run.pages, 1):
        if page.quest_items:
            print(f"  Page {page_number} - find: {', '.join(page.quest_items)}")

    if args.export and run.pages:
        export_pages(run.pages, run.theme, args.export)

    if args.save and run.status is AppStatus.SUCCESS:
        book = _build_library(config).save_book(run.theme, run.pages, photo.data_url)
        print(f"Adventure saved to your library! (id: {book.id})")

    return 0 if run.status is AppStatus.SUCCESS else 1


def cmd_library(args, config: dict) -> int:
    library = _build_library(config)

    if args.action == 'list':
        books = library.list_books()
        if not books:
            print("Your vault is empty.")
        for book in books:
            print(f"{book.id}  {book.title}  ({len(book.pages)} pages)")
        return 0

    if args.action == 'delete':
        library.delete_book(args.book_id)
        print(f"Deleted {args.book_id}")
        return 0

    book = library.load_book(args.book_id)
    if args.action == 'show':
        print(f"{book.title} ({len(book.pages)} pages)")
        for page_number, page in enumerate(book.pages, 1):
            items = ', '.join(page.quest_items) or '-'
            print(f"  Page {page_number}: {items}")
        return 0

    # export
    export_pages(book.pages, book.title, args.output_dir)
    return 0


def cmd_locate(args, config: dict) -> int:
    book = _build_library(config).load_book(args.book_id)
    generator = _build_generator(config)
    generator.load_book(book)

    hints = HintManager(generator.api_client, generator)
    hints.go_to_page(args.page - 1)
    outcome = asyncio.run(hints.locate())

    if outcome is HintOutcome.FOUND:
        overlay = hints.box.to_percentages()
        print(
            f"Found you on page {args.page}: top {overlay['top']:.1f}%, left {overlay['left']:.1f}%, "
            f"width {overlay['width']:.1f}%, height {overlay['height']:.1f}%"
        )
        return 0
    if outcome is HintOutcome.NOT_FOUND:
        print(NOT_FOUND_MESSAGE)
        return 0
    if outcome is HintOutcome.SKIPPED:
        print("This book has no target photo or page image to search.")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Hide yourself in an AI-generated search-and-find book.')
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH, help='Path to the YAML configuration file')
    parser.add_argument('--verbose', action='store_true', help='Log debug output to stderr')
    subparsers = parser.add_subparsers(dest='command', required=True)

    generate = subparsers.add_parser('generate', help='Generate a new book')
    generate.add_argument('--photo', required=True, help='Portrait of the hero to hide')
    generate.add_argument('--theme', required=True, help='Scenery to generate, e.g. "Cyberpunk Tokyo"')
    generate.add_argument('--pages', type=int, default=None, help='Number of pages')
    generate.add_argument('--save', action='store_true', help='Save the finished book to the library')
    generate.add_argument('--export', metavar='DIR', help='Write page images to DIR')

    library = subparsers.add_parser('library', help='Manage saved books')
    library_actions = library.add_subparsers(dest='action', required=True)
    library_actions.add_parser('list', help='List saved books, newest first')
    for action in ('show', 'delete'):
        action_parser = library_actions.add_parser(action, help=f'{action.title()} a saved book')
        action_parser.add_argument('book_id')
    export = library_actions.add_parser('export', help='Write a saved book\'s pages to a directory')
    export.add_argument('book_id')
    export.add_argument('output_dir')

    locate = subparsers.add_parser('locate', help='Get a hint for where you are hidden')
    locate.add_argument('book_id')
    locate.add_argument('page', type=int, help='Page number (1-based)')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the crowdquest command."""
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    configure_logging(config['logging'], args.verbose)

    if args.command == 'generate' and args.pages is None:
        args.pages = config['generation']['default_pages']

    commands = {
        'generate': cmd_generate,
        'library': cmd_library,
        'locate': cmd_locate,
    }
    try:
        return commands[args.command](args, config)
    except (CrowdQuestError, ValueError, IndexError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
