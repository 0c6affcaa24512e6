"""factory_boy factories for scan result payloads used in tests."""

import factory
from faker import Faker

from scanstore.storage.normalize import GRADE_RANKING
from scanstore.storage.scan_result import CheckOutcome, ScanResult, ScanSummary

fake = Faker()

# Check names as emitted by the analysis pipeline
CHECK_NAMES = (
    "content-security-policy",
    "cookies",
    "cross-origin-resource-sharing",
    "redirection",
    "referrer-policy",
    "strict-transport-security",
    "subresource-integrity",
    "x-content-type-options",
    "x-frame-options",
)


class CheckOutcomeFactory(factory.Factory):
    class Meta:
        model = CheckOutcome

    expectation = factory.LazyFunction(lambda: f"{fake.word()}-implemented")
    result = factory.LazyFunction(lambda: f"{fake.word()}-implemented")
    passed = factory.Faker("pybool")
    score_modifier = factory.Faker("random_element", elements=(-25, -10, -5, 0, 5))
    score_description = factory.Faker("sentence")
    data = factory.LazyFunction(lambda: {"header": fake.word()})


def _check_outcomes(count: int = len(CHECK_NAMES)) -> dict[str, CheckOutcome]:
    return {name: CheckOutcomeFactory() for name in CHECK_NAMES[:count]}


class ScanSummaryFactory(factory.Factory):
    class Meta:
        model = ScanSummary

    class Params:
        failed = factory.Trait(grade=None, score=None, error="site down")

    tests_quantity = len(CHECK_NAMES)
    tests_passed = factory.Faker("pyint", min_value=0, max_value=len(CHECK_NAMES))
    tests_failed = factory.LazyAttribute(lambda o: o.tests_quantity - o.tests_passed)
    grade = factory.Faker("random_element", elements=GRADE_RANKING)
    score = factory.Faker("pyint", min_value=0, max_value=135)
    status_code = 200
    response_headers = factory.LazyFunction(
        lambda: {"Content-Type": "text/html", "Server": fake.word()}
    )
    error = None


class ScanResultFactory(factory.Factory):
    class Meta:
        model = ScanResult

    class Params:
        failed = factory.Trait(scan=factory.SubFactory(ScanSummaryFactory, failed=True))

    scan = factory.SubFactory(ScanSummaryFactory)
    tests = factory.LazyFunction(_check_outcomes)
