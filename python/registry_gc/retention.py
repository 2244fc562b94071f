"""
Retention policy engine.

Reconciles the retention rules of a RetentionPolicy into one deletion set:

1. untagged images are candidates when ``delete_untagged`` is set
2. for each tag prefix, the ``count`` most recently pushed matching images are
   protected and the older matches are candidates
3. when a repository holds more than ``max_images`` images, the oldest
   unprotected images are candidates until the excess is covered

Protection always wins: an image kept by any prefix window is never deleted.
Everything here is pure and deterministic, so it is safe to call from many
threads at once.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from registry_gc.models import Image, RetentionPolicy

UNTAGGED_RULE = "untagged"
MAX_IMAGES_RULE = "max-images"
NO_RULE = "no-rule"


class Action(Enum):
    KEEP = "keep"
    DELETE = "delete"


@dataclass(frozen=True)
class Decision:
    """Why an image is kept or deleted."""

    image: Image
    action: Action
    rule: str


def oldest_first(image: Image):
    return (image.pushed_at, image.digest)


def _newest_first(images: Iterable[Image]) -> List[Image]:
    # Two stable sorts: digest ascending, then pushed_at descending
    return sorted(sorted(images, key=lambda image: image.digest), key=lambda image: image.pushed_at, reverse=True)


def _unique_by_digest(images: Iterable[Image]) -> List[Image]:
    seen: Set[str] = set()
    unique = []
    for image in images:
        if image.digest in seen:
            continue
        seen.add(image.digest)
        unique.append(image)
    return unique


def explain_decisions(images: Iterable[Image], policy: RetentionPolicy) -> Dict[str, Decision]:
    """Decide the fate of every image and record the rule responsible.

    Returns:
        Mapping of digest -> Decision for every distinct image
    """
    images = _unique_by_digest(images)
    tagged = [image for image in images if not image.is_untagged]

    protected: Dict[str, str] = {}
    candidates: Dict[str, str] = {}

    if policy.delete_untagged:
        for image in images:
            if image.is_untagged:
                candidates.setdefault(image.digest, UNTAGGED_RULE)

    for prefix in sorted(policy.keep_counts):
        count = policy.keep_counts[prefix]
        matching = _newest_first(image for image in tagged if image.has_tag_prefix(prefix))
        for image in matching[:count]:
            protected.setdefault(image.digest, f"keep:{prefix}")
        for image in matching[count:]:
            candidates.setdefault(image.digest, f"expired:{prefix}")

    if policy.max_images is not None and len(images) > policy.max_images:
        excess = len(images) - policy.max_images
        unprotected = sorted((image for image in images if image.digest not in protected), key=oldest_first)
        for image in unprotected[:excess]:
            candidates.setdefault(image.digest, MAX_IMAGES_RULE)

    decisions = {}
    for image in images:
        if image.digest in protected:
            decisions[image.digest] = Decision(image, Action.KEEP, protected[image.digest])
        elif image.digest in candidates:
            decisions[image.digest] = Decision(image, Action.DELETE, candidates[image.digest])
        else:
            decisions[image.digest] = Decision(image, Action.KEEP, NO_RULE)
    return decisions


def compute_deletion_set(images: Iterable[Image], policy: RetentionPolicy) -> List[Image]:
    """Return the images to delete, oldest first with ties broken by digest.

    Args:
        images: Images of a single repository
        policy: Validated retention policy

    Returns:
        Distinct images (by digest) that no rule protects and at least one rule marks
    """
    if policy.is_empty():
        return []
    decisions = explain_decisions(images, policy)
    doomed = [d.image for d in decisions.values() if d.action is Action.DELETE]
    return sorted(doomed, key=oldest_first)


def deletion_rule_counts(decisions: Dict[str, Decision], action: Optional[Action] = None) -> Dict[str, int]:
    """Tally decisions per rule, optionally only those with the given action."""
    counts: Dict[str, int] = {}
    for decision in decisions.values():
        if action is not None and decision.action is not action:
            continue
        counts[decision.rule] = counts.get(decision.rule, 0) + 1
    return counts
