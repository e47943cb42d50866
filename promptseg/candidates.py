"""The three ranked mask hypotheses returned by one decode call."""

from typing import Sequence

from promptseg.models import MaskCandidate

CANDIDATE_COUNT = 3


class CandidateSet:
    def __init__(self, candidates: Sequence[MaskCandidate]):
        if len(candidates) != CANDIDATE_COUNT:
            raise ValueError(f"Expected {CANDIDATE_COUNT} mask candidates, got {len(candidates)}")
        self.candidates = tuple(candidates)
        self.selected_index = self.best_index()

    def __len__(self) -> int:
        return len(self.candidates)

    def __getitem__(self, index: int) -> MaskCandidate:
        return self.candidates[index]

    @property
    def scores(self) -> tuple[float, ...]:
        return tuple(c.score for c in self.candidates)

    def best_index(self) -> int:
        """Index of the highest score; ties go to the lowest index."""
        best = 0
        for i, candidate in enumerate(self.candidates):
            if candidate.score > self.candidates[best].score:
                best = i
        return best

    def best(self) -> MaskCandidate:
        return self.candidates[self.best_index()]

    def select(self, index: int) -> MaskCandidate:
        if not 0 <= index < len(self.candidates):
            raise IndexError(f"Candidate index out of range: {index}")
        self.selected_index = index
        return self.candidates[index]

    @property
    def selected(self) -> MaskCandidate:
        return self.candidates[self.selected_index]
