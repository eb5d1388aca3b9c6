"""
Score persistence.

Parsed scores are exchanged as JSON documents in the layout produced by the
score-parsing collaborator. A ScoreLibrary indexes a directory of them.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Iterator, Optional

from interactive_accompaniment.core.types import ParsedScore

logger = logging.getLogger(__name__)


def load_score_file(path: Path | str) -> ParsedScore:
    """
    Load a parsed score from a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a valid score document.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Score file not found: {path}")

    with open(path, encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid score JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Score document must be an object: {path}")

    try:
        score = ParsedScore.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Malformed score {path}: {e}") from e

    logger.info(f"Loaded score '{score.title}' from {path}")
    return score


def save_score_file(score: ParsedScore, path: Path | str) -> None:
    """Save a parsed score as JSON."""
    path = Path(path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(score.to_dict(), f, indent=2)
    logger.info(f"Saved score '{score.title}' to {path}")


class ScoreLibrary:
    """
    Directory of score JSON files, keyed by file stem.
    """

    def __init__(self, directory: Optional[Path | str] = None):
        self.directory = Path(directory) if directory else None
        self._scores: dict[str, ParsedScore] = {}

        if self.directory and self.directory.exists():
            self.load()

    def __len__(self) -> int:
        return len(self._scores)

    def __contains__(self, name: str) -> bool:
        return name in self._scores

    def __iter__(self) -> Iterator[str]:
        return iter(self._scores)

    def __getitem__(self, name: str) -> ParsedScore:
        return self._scores[name]

    def add(self, name: str, score: ParsedScore) -> None:
        self._scores[name] = score
        logger.info(f"Added score '{name}'")

    def remove(self, name: str) -> bool:
        if name in self._scores:
            del self._scores[name]
            logger.info(f"Removed score '{name}'")
            return True
        return False

    def load(self) -> None:
        """Load every ``*.json`` score in the directory; unreadable files are skipped."""
        if not self.directory:
            raise ValueError("No directory specified")

        for path in sorted(self.directory.glob("*.json")):
            try:
                self._scores[path.stem] = load_score_file(path)
            except ValueError as e:
                logger.error(f"Skipping {path.name}: {e}")

        logger.info(f"Loaded {len(self._scores)} scores from {self.directory}")

    def save(self) -> None:
        if not self.directory:
            raise ValueError("No directory specified")
        self.directory.mkdir(parents=True, exist_ok=True)
        for name, score in self._scores.items():
            save_score_file(score, self.directory / f"{name}.json")

    def list_scores(self) -> list[str]:
        return sorted(self._scores)

    def search(self, pattern: str) -> list[str]:
        """Names whose key or title matches the regex ``pattern``."""
        regex = re.compile(pattern, re.IGNORECASE)
        return [
            name
            for name, score in self._scores.items()
            if regex.search(name) or regex.search(score.title)
        ]

    def stats(self) -> dict:
        if not self._scores:
            return {"count": 0}

        note_counts = [
            sum(len(p.notes) for p in score.parts) for score in self._scores.values()
        ]
        return {
            "count": len(self._scores),
            "total_notes": sum(note_counts),
            "avg_notes_per_score": sum(note_counts) / len(note_counts),
            "min_notes": min(note_counts),
            "max_notes": max(note_counts),
        }


def score_summary(score: ParsedScore) -> dict:
    """Summary figures for display."""
    solo = score.solo_part
    return {
        "title": score.title,
        "tempo": score.tempo,
        "time_signature": f"{score.time_signature.beats}/{score.time_signature.beat_type}",
        "parts": len(score.parts),
        "solo_part": solo.name if solo else None,
        "solo_notes": len(solo.notes) if solo else 0,
        "accompaniment_notes": sum(len(p.notes) for p in score.parts if not p.is_solo),
        "measures": score.total_measures,
        "playback_slots": len(score.playback_order),
        "annotations": len(score.measures),
    }
