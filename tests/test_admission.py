import unittest

from admission import should_proceed
from kube_types import (
    PHASE_COMPLETED,
    PHASE_FAILED,
    PHASE_IN_PROGRESS,
    PHASE_NEW,
    ObjectMeta,
    Replacement,
    ReplacementSpec,
    ReplacementStatus,
)


def make(name: str, priority: int = 0, phase: str = PHASE_NEW) -> Replacement:
    return Replacement(
        metadata=ObjectMeta(name=name),
        spec=ReplacementSpec(node_name=f"node-{name}", node_uid=f"uid-{name}", priority=priority),
        status=ReplacementStatus(phase=phase),
    )


class AdmissionTests(unittest.TestCase):
    def test_alone_proceeds(self) -> None:
        a = make("a")
        self.assertEqual(should_proceed(a, [a]), (True, ""))

    def test_higher_priority_goes_first(self) -> None:
        a, b = make("a", 0), make("b", 10)
        self.assertEqual(should_proceed(a, [a, b]), (False, 'NodeReplacement "b" has a higher priority'))
        self.assertEqual(should_proceed(b, [a, b]), (True, ""))

    def test_equal_priority_does_not_block(self) -> None:
        a, b = make("a", 5), make("b", 5)
        self.assertTrue(should_proceed(a, [a, b])[0])
        self.assertTrue(should_proceed(b, [a, b])[0])

    def test_in_progress_blocks_everyone(self) -> None:
        running = make("running", 0, PHASE_IN_PROGRESS)
        urgent = make("urgent", 100)
        proceed, reason = should_proceed(urgent, [running, urgent])
        self.assertFalse(proceed)
        self.assertEqual(reason, 'NodeReplacement "running" is already in-progress')

    def test_in_progress_is_checked_before_priority(self) -> None:
        running = make("running", 0, PHASE_IN_PROGRESS)
        higher = make("higher", 50)
        candidate = make("candidate", 10)
        _, reason = should_proceed(candidate, [higher, running, candidate])
        self.assertIn("already in-progress", reason)

    def test_reports_first_in_progress_by_name(self) -> None:
        others = [make("zeta", 0, PHASE_IN_PROGRESS), make("alpha", 0, PHASE_IN_PROGRESS)]
        candidate = make("c")
        _, reason = should_proceed(candidate, others + [candidate])
        self.assertEqual(reason, 'NodeReplacement "alpha" is already in-progress')

    def test_reports_most_urgent_blocker(self) -> None:
        candidate = make("c", 1)
        others = [make("b", 7), make("a", 7), make("d", 3)]
        _, reason = should_proceed(candidate, others + [candidate])
        self.assertEqual(reason, 'NodeReplacement "a" has a higher priority')

    def test_finished_replacements_are_ignored(self) -> None:
        candidate = make("c", 0)
        others = [make("done", 99, PHASE_COMPLETED), make("broken", 99, PHASE_FAILED)]
        self.assertEqual(should_proceed(candidate, others + [candidate]), (True, ""))

    def test_candidate_in_listing_does_not_block_itself(self) -> None:
        candidate = make("c", 0, PHASE_IN_PROGRESS)
        self.assertEqual(should_proceed(candidate, [candidate]), (True, ""))


if __name__ == "__main__":
    unittest.main()
