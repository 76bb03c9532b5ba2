"""Fan-out orchestration: routing, launch, split, finalize, teardown and monitors."""
