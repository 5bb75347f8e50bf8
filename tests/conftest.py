import pytest
from collections import defaultdict


def pytest_configure(config):
    # Barrier iteration counts, keyed by test function name.
    config.solver_stats = defaultdict(list)


@pytest.fixture
def record_iterations(request):
    """
    Fixture that records the number of barrier iterations of a solve.
    """
    # Parametrized variants share the name of the test function.
    test_name = request.node.originalname or request.node.name

    def _record(n):
        request.config.solver_stats[test_name].append(n)
    return _record


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    stats = config.solver_stats
    if not stats:
        return

    terminalreporter.section("PDCO Solver Iteration Statistics")

    fmt = "{:<32} | {:<6} | {:<9} | {:<9}"
    terminalreporter.write_line(fmt.format("Test Name", "Count", "Avg Iter", "Max Iter"))
    terminalreporter.write_line("-" * 66)

    all_iterations = []
    for name, values in sorted(stats.items()):
        all_iterations.extend(values)
        terminalreporter.write_line(
            fmt.format(name, len(values), f"{sum(values) / len(values):.2f}", max(values))
        )

    terminalreporter.write_line("-" * 66)
    terminalreporter.write_line(
        fmt.format(
            "AGGREGATE",
            len(all_iterations),
            f"{sum(all_iterations) / len(all_iterations):.2f}",
            max(all_iterations),
        )
    )
