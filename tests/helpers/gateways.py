from __future__ import annotations

from collections.abc import Iterable

from domain.compliance import GatewayResult, ScheduledReport


class StubGateway:
    """Returns queued results (or raises queued exceptions) in order, then ``default``."""

    def __init__(
        self,
        results: Iterable[GatewayResult | Exception] = (),
        *,
        default: GatewayResult | None = None,
    ) -> None:
        self.results = list(results)
        self.default = default or GatewayResult.sent("ok", "GW-1")
        self.calls: list[ScheduledReport] = []

    def queue(self, *results: GatewayResult | Exception) -> None:
        self.results.extend(results)

    def submit(self, report: ScheduledReport) -> GatewayResult:
        self.calls.append(report)
        if not self.results:
            return self.default
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class KnownTransactions:
    def __init__(self, *transaction_ids: str) -> None:
        self.transaction_ids = set(transaction_ids)

    def transaction_exists(self, transaction_id: str) -> bool:
        return transaction_id in self.transaction_ids
