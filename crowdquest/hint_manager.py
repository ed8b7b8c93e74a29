from enum import Enum
from typing import Optional

from loguru import logger

from .errors import LocateFailed
from .generate_book import BookGenerator
from .models import GeneratedPage, NormalizedBox


class HintOutcome(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    SKIPPED = "skipped"
    STALE = "stale"


NOT_FOUND_MESSAGE = "Couldn't spot you! You're a master of disguise. Try looking harder!"


class HintManager:
    """On-demand "where am I?" hints for the page currently being viewed.

    A new request supersedes any request still in flight. Each request carries
    a token, the page index and the generator epoch it was issued for; a reply
    that no longer matches all three is dropped.
    """

    def __init__(self, api_client, generator: BookGenerator):
        self.api_client = api_client
        self.generator = generator

        self.page_index = 0
        self.busy = False
        self._box: Optional[NormalizedBox] = None
        self._box_epoch: Optional[int] = None
        self._token = 0

    @property
    def box(self) -> Optional[NormalizedBox]:
        # A box from a run that has since been reset or replaced is never shown
        if self._box_epoch != self.generator.epoch:
            return None
        return self._box

    @property
    def page_count(self) -> int:
        return len(self.generator.state.pages)

    @property
    def current_page(self) -> Optional[GeneratedPage]:
        pages = self.generator.state.pages
        if 0 <= self.page_index < len(pages):
            return pages[self.page_index]
        return None

    def _clear(self) -> None:
        self._token += 1
        self.busy = False
        self._box = None
        self._box_epoch = None

    # --- Navigation --- #

    def go_to_page(self, index: int) -> None:
        """Switch the viewed page; any hint (shown or pending) is discarded."""
        if index < 0 or index >= max(self.page_count, 1):
            raise IndexError(f"Page {index + 1} does not exist (book has {self.page_count} pages)")
        if index != self.page_index:
            logger.debug(f"Viewing page {index + 1}")
        self.page_index = index
        self._clear()

    def next_page(self) -> None:
        if self.page_index < self.page_count - 1:
            self.go_to_page(self.page_index + 1)

    def previous_page(self) -> None:
        if self.page_index > 0:
            self.go_to_page(self.page_index - 1)

    # --- Localization --- #

    async def locate(self) -> HintOutcome:
        """
        Ask the vision model where the hero is on the current page.

        Returns:
            FOUND with :attr:`box` set, NOT_FOUND when the model could not spot
            the hero, FAILED when the request failed (logged, never raised),
            SKIPPED when there is no photo or page image, STALE when the reply
            arrived after navigation, reset or a newer request.
        """
        photo = self.generator.target_photo
        page = self.current_page
        if photo is None or page is None or not page.image_url:
            logger.debug("Locate skipped: no target photo or page image")
            return HintOutcome.SKIPPED

        self._token += 1
        token = self._token
        page_index = self.page_index
        epoch = self.generator.epoch

        self.busy = True
        self._box = None
        self._box_epoch = None

        try:
            box = await self.api_client.locate_target(photo, page.image_url)
        except LocateFailed as e:
            if token == self._token:
                self.busy = False
            logger.error(f"Locate failed on page {page_index + 1}: {e}")
            return HintOutcome.FAILED

        if token == self._token:
            self.busy = False
        if not self._owns(token, page_index, epoch):
            logger.info(f"Discarding locate result for page {page_index + 1}: view changed")
            return HintOutcome.STALE

        if box is None:
            logger.info(f"Hero not found on page {page_index + 1}")
            return HintOutcome.NOT_FOUND

        self._box = box
        self._box_epoch = epoch
        logger.info(f"Hero located on page {page_index + 1}: {box.as_tuple()}")
        return HintOutcome.FOUND

    def _owns(self, token: int, page_index: int, epoch: int) -> bool:
        return (
            token == self._token
            and page_index == self.page_index
            and epoch == self.generator.epoch
        )
