import asyncio

from dangerprep_net.errors import NetworkError
from dangerprep_net.services.auto_evaluator import AutoEvaluator


class CountingIntelligence:
    def __init__(self, fail=False):
        self.calls = 0
        self.fail = fail

    def evaluate(self):
        self.calls += 1
        if self.fail:
            raise NetworkError("probe failed")


def run_for(evaluator, seconds):
    async def scenario():
        await evaluator.start()
        await evaluator.start()
        await asyncio.sleep(seconds)
        running = evaluator.running
        await evaluator.stop()
        return running

    return asyncio.run(scenario())


def test_evaluates_until_stopped():
    brain = CountingIntelligence()
    evaluator = AutoEvaluator(brain, interval=0.01)
    assert run_for(evaluator, 0.1) is True
    assert brain.calls >= 2
    assert evaluator.running is False


def test_failures_do_not_stop_the_loop():
    brain = CountingIntelligence(fail=True)
    evaluator = AutoEvaluator(brain, interval=0.01)
    run_for(evaluator, 0.1)
    assert brain.calls >= 2
