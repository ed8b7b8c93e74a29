import asyncio
from contextlib import asynccontextmanager
from typing import Callable, List, Optional

from loguru import logger

from .errors import GenerationInProgress, MissingInput
from .models import AppStatus, GenerationRun, PageRequestSpec, SavedBook, UploadedPhoto
from .prompt_manager import PromptManager

GENERIC_ERROR_MESSAGE = "Failed to generate. Please try again."


class BookGenerator:
    """Drives sequential page generation for one book at a time.

    The working state is a single :class:`GenerationRun` whose status moves
    ``IDLE -> GENERATING -> SUCCESS | ERROR``; :meth:`reset` returns to ``IDLE``
    from anywhere. Every run gets a new epoch, and results that arrive for an
    older epoch are dropped.
    """

    def __init__(self,
                 api_client,
                 prompt_manager: PromptManager,
                 generation_config: dict,
                 on_update: Optional[Callable[[GenerationRun], None]] = None):
        """Initialize the generator with the ``generation`` configuration section."""
        self.api_client = api_client
        self.prompt_manager = prompt_manager
        self.on_update = on_update

        self.min_pages = generation_config.get('min_pages', 1)
        self.max_pages = generation_config.get('max_pages', 5)
        self.status_interval = generation_config.get('status_interval', 2.5)
        self.loading_messages: List[str] = list(generation_config.get('loading_messages', []))

        self.state = GenerationRun()
        self.target_photo: Optional[UploadedPhoto] = None
        self._epoch = 0
        self._status_task: Optional[asyncio.Task] = None

    @property
    def epoch(self) -> int:
        return self._epoch

    def _notify(self) -> None:
        if self.on_update:
            self.on_update(self.state.snapshot())

    def _is_stale(self, epoch: int) -> bool:
        return epoch != self._epoch

    def _validate(self, photo: Optional[UploadedPhoto], theme: Optional[str], total_pages: int) -> None:
        """Reject a run before any state change or remote call."""
        if photo is None:
            raise MissingInput("Please upload an image first!")
        if not theme or not theme.strip():
            raise MissingInput("Please describe a scenery!")
        if isinstance(total_pages, bool) or not isinstance(total_pages, int):
            raise ValueError(f"Page count must be an integer, got {total_pages!r}")
        if not self.min_pages <= total_pages <= self.max_pages:
            raise ValueError(f"Page count must be between {self.min_pages} and {self.max_pages}")

    # --- Status Messages --- #

    async def _cycle_status_messages(self, run: GenerationRun) -> None:
        step = 0
        while True:
            await asyncio.sleep(self.status_interval)
            step = (step + 1) % len(self.loading_messages)
            run.loading_message = self.loading_messages[step]
            self._notify()

    @asynccontextmanager
    async def _status_cycle(self, run: GenerationRun):
        """Rotate the loading message for exactly as long as the block runs."""
        if not self.loading_messages:
            yield
            return

        task = asyncio.create_task(self._cycle_status_messages(run))
        self._status_task = task
        try:
            yield
        finally:
            task.cancel()
            if self._status_task is task:
                self._status_task = None

    def _stop_status_cycle(self) -> None:
        if self._status_task is not None:
            self._status_task.cancel()
            self._status_task = None

    # --- Operations --- #

    async def run(self, photo: Optional[UploadedPhoto], theme: Optional[str], total_pages: int) -> GenerationRun:
        """
        Generate ``total_pages`` pages one after another.

        Page ``i`` is requested only after page ``i - 1`` has come back. The first
        failure ends the run in ``ERROR``; pages produced before it are kept.

        Args:
            photo: The normalized target photo.
            theme: Scene description, also used as the book title.
            total_pages: Number of pages to generate.

        Returns:
            The run state as left by this call.

        Raises:
            MissingInput: No photo or an empty theme. Nothing is changed.
            GenerationInProgress: Another run is still generating.
            ValueError: Page count out of the configured range.
        """
        if self.state.status is AppStatus.GENERATING:
            raise GenerationInProgress("A book is already being generated")
        self._validate(photo, theme, total_pages)

        theme = theme.strip()
        self._epoch += 1
        epoch = self._epoch

        run = GenerationRun(
            status=AppStatus.GENERATING,
            theme=theme,
            total_pages=total_pages,
            loading_message=self.loading_messages[0] if self.loading_messages else None,
        )
        self.state = run
        self.target_photo = photo
        logger.info(f"Starting book generation: '{theme}' ({total_pages} pages)")
        self._notify()

        error: Optional[Exception] = None
        async with self._status_cycle(run):
            for page_index in range(total_pages):
                spec = PageRequestSpec(
                    target_photo=photo,
                    theme=theme,
                    variation_index=page_index,
                    total_pages=total_pages,
                )
                prompt_text = self.prompt_manager.build_page_prompt(spec)

                logger.info(f"Generating page {page_index + 1} of {total_pages}...")
                try:
                    page = await self.api_client.generate_page(photo, prompt_text)
                except Exception as e:
                    error = e
                    break

                if self._is_stale(epoch):
                    logger.info(f"Discarding page {page_index + 1}: run was reset")
                    return run

                run.pages.append(page)
                logger.info(f"Page {page_index + 1} of {total_pages} complete ({run.progress_percentage}%)")
                self._notify()

        if self._is_stale(epoch):
            logger.info("Discarding result of a run that was reset")
            return run

        run.loading_message = None
        if error is not None:
            run.status = AppStatus.ERROR
            run.error_message = str(error) or GENERIC_ERROR_MESSAGE
            logger.error(f"Book generation failed on page {run.pages_completed + 1}: {run.error_message}")
        else:
            run.status = AppStatus.SUCCESS
            logger.info("Book generation completed!")

        self._notify()
        return run

    def reset(self) -> None:
        """Discard the current run and return to IDLE."""
        self._stop_status_cycle()
        self._epoch += 1
        self.state = GenerationRun()
        self.target_photo = None
        logger.info("Generator reset")
        self._notify()

    def load_book(self, book: SavedBook) -> None:
        """Show a saved book as a finished run."""
        self._stop_status_cycle()
        self._epoch += 1
        self.state = GenerationRun(
            status=AppStatus.SUCCESS,
            theme=book.title,
            pages=list(book.pages),
            total_pages=len(book.pages),
        )
        self.target_photo = book.target_photo
        logger.info(f"Loaded book '{book.title}' ({len(book.pages)} pages)")
        self._notify()
