from collections import defaultdict
from typing import Dict, List

from loguru import logger

from .models import PageRequestSpec


class PromptManager:
    """Builds the prompt text sent to the image and vision models."""

    def __init__(self, generation_config: dict):
        """Initialize with the ``generation`` section of the configuration."""
        self.motifs: Dict[str, dict] = generation_config.get('motifs', {}) or {}
        self.quest_item_count = generation_config.get('quest_item_count', 5)

        # Theme text -> detected motif names
        self.motif_cache: Dict[str, List[str]] = {}

    # --- Theme Analysis --- #

    def detect_motifs(self, theme: str) -> List[str]:
        """Return the motif names whose indicator keywords appear in the theme."""
        text_to_analyze = theme.lower()
        if text_to_analyze in self.motif_cache:
            return self.motif_cache[text_to_analyze]

        motif_scores = defaultdict(int)
        for motif_name, motif_data in self.motifs.items():
            for indicator in motif_data.get('indicators', []):
                if indicator.lower() in text_to_analyze:
                    motif_scores[motif_name] += 1

        # Strongest match first, config order breaks ties
        order = list(self.motifs)
        detected = sorted(motif_scores, key=lambda name: (-motif_scores[name], order.index(name)))
        if detected:
            logger.debug(f"Detected motifs for theme '{theme}': {', '.join(detected)}")

        self.motif_cache[text_to_analyze] = detected
        return detected

    def _build_motif_section(self, theme: str) -> List[str]:
        lines = []
        for motif_name in self.detect_motifs(theme):
            elements = self.motifs[motif_name].get('elements', [])
            if elements:
                lines.append(f"- {motif_name.replace('_', ' ').title()}: include {', '.join(elements)}")
        if lines:
            lines.insert(0, "\nTHEME MOTIFS (weave these into the crowd and background):")
        return lines

    # --- Page Prompts --- #

    def build_variation_text(self, spec: PageRequestSpec) -> str:
        """Theme plus the per-page variation suffix."""
        return (
            f"{spec.theme} - unique variation #{spec.variation_index + 1} "
            f"with different character placements and sub-themes."
        )

    def build_page_prompt(self, spec: PageRequestSpec) -> str:
        """Build the full generation prompt for one page of a book."""
        prompt_parts = [
            "Create a highly detailed, busy 'search-and-find' cartoon illustration "
            "packed with hundreds of characters.",
            f"SCENE: {self.build_variation_text(spec)}",
            f"This is page {spec.variation_index + 1} of {spec.total_pages}; "
            "its layout and crowd must differ from the other pages.",
            "",
            "HIDDEN HERO:",
            "- Turn the person in the attached photo into a cartoon character in the same art style.",
            "- Keep their recognizable features (hair, face shape, skin tone, glasses, clothing colors).",
            "- Hide them exactly once, small and partly blended into the crowd, never in the center.",
            "- Do not add labels, arrows or outlines that reveal them.",
        ]

        prompt_parts.extend(self._build_motif_section(spec.theme))

        prompt_parts.extend([
            "",
            "QUEST ITEMS:",
            f"Also hide {self.quest_item_count} small, distinct objects in the scene and list them in "
            "your text reply as a JSON array of short names, e.g. [\"red kite\", \"lost shoe\"].",
            "",
            "ART STYLE: bright flat colors, clean outlines, wide-angle high vantage point, no text in the image.",
        ])

        return "\n".join(prompt_parts)

    # --- Localization Prompts --- #

    def build_locate_prompt(self) -> str:
        """Prompt asking the vision model for the hero's bounding box."""
        return "\n".join([
            "The first image is a photo of a person. The second image is a crowded cartoon scene "
            "in which a cartoon version of that person is hidden.",
            "Find the cartoon character that best matches the person in the photo.",
            "Reply with JSON only: {\"found\": true, \"box_2d\": [ymin, xmin, ymax, xmax]} using "
            "coordinates normalized to 0-1000 relative to the scene image.",
            "If the person cannot be identified, reply {\"found\": false, \"box_2d\": null}.",
        ])
