"""Instrument lookup used by the valuation service."""

from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Union
import logging
import threading

from structpricer.core.errors import InstrumentNotFoundError, InvalidInputError
from structpricer.products.schema import InstrumentBase, load_instrument


logger = logging.getLogger(__name__)


class InstrumentRepository(Protocol):
    """Source of instrument definitions and portfolio memberships."""

    def get(self, instrument_id: str) -> InstrumentBase:
        ...

    def portfolio(self, portfolio_id: str) -> List[str]:
        ...

    def instrument_ids(self) -> List[str]:
        ...


class InMemoryInstrumentRepository:
    """Dictionary-backed repository."""

    def __init__(
        self,
        instruments: Iterable[InstrumentBase] = (),
        portfolios: Optional[Mapping[str, Sequence[str]]] = None
    ) -> None:
        self._lock = threading.Lock()
        self._instruments: Dict[str, InstrumentBase] = {}
        self._portfolios: Dict[str, List[str]] = {}
        for instrument in instruments:
            self.add(instrument)
        for portfolio_id, members in (portfolios or {}).items():
            self.add_portfolio(portfolio_id, members)

    @classmethod
    def from_directory(cls, path: Union[str, Path], pattern: str = "*.json") -> "InMemoryInstrumentRepository":
        """Load every instrument definition matching ``pattern`` under ``path``."""
        files = sorted(Path(path).glob(pattern))
        repo = cls(load_instrument(f) for f in files)
        logger.info(f"Loaded {len(files)} instruments from {path}")
        return repo

    def add(self, instrument: InstrumentBase) -> None:
        with self._lock:
            self._instruments[instrument.instrument_id] = instrument

    def add_portfolio(self, portfolio_id: str, members: Sequence[str]) -> None:
        with self._lock:
            self._portfolios[portfolio_id] = list(members)

    def get(self, instrument_id: str) -> InstrumentBase:
        with self._lock:
            try:
                return self._instruments[instrument_id]
            except KeyError:
                raise InstrumentNotFoundError(instrument_id) from None

    def portfolio(self, portfolio_id: str) -> List[str]:
        with self._lock:
            if portfolio_id not in self._portfolios:
                raise InvalidInputError(f"Unknown portfolio: {portfolio_id}")
            return list(self._portfolios[portfolio_id])

    def instrument_ids(self) -> List[str]:
        with self._lock:
            return list(self._instruments)

    def __len__(self) -> int:
        return len(self._instruments)

    def __contains__(self, instrument_id: str) -> bool:
        return instrument_id in self._instruments
