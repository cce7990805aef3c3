# Copyright (C) Inco - All Rights Reserved.
#
# Unauthorized copying of this file, via any medium, is strictly prohibited. Proprietary and confidential.
#
# [LAYOUT]
#
# This module is organized in the same order its parts depend on each other, leaf first:
#
#   1. Date arithmetic. Day count bases, yearly divisors, periodic rates and period stepping.
#   2. Amortization tables. PMT, per period interest and principal parts, PRICE and SAC tables.
#   3. Records. Contracts, legs, snapshots, payments, ledger entries, accrual rows.
#   4. FX gateway. The interface the engine consumes, plus an in memory implementation.
#   5. Ledger store and payment engine.
#   6. Accrual scheduler and the accrual / payment recalculator.
#   7. Report projection.
#   8. The loan book, which owns everything above for a session.
#
# [ROUNDING]
#
# All arithmetic is done with "decimal.Decimal" at the default context precision. Values are rounded only at fixed
# points: money to cents, interest in origin currency to four places, FX rates to six places, periodic rates to eight
# places when stored in a row. Intermediate values are never rounded.
#
# [WEAKNESSES]
#
#   • BUS/252 counts weekdays only. There is no holiday calendar, so business day counts in weeks with a holiday are
#     off by one per holiday.
#
#   • When no FX rate can be found for a payment date, balances are converted back to the origin currency by scaling
#     the original principal. That is an approximation, and it is logged every time it happens.
#

'''
Loancore, a multi-currency loan contract engine.

Keeps contracts denominated in any currency, with their principal also expressed in BRL. Accrues interest across
30/360, ACT/360, ACT/365 and BUS/252 bases, with exponential or linear compounding. Builds PRICE and SAC amortization
tables. Applies payments interest first, in any currency, and records each balance affecting event in an append-only
ledger from which the balance at any past date can be reconstructed.

The accrual scheduler builds a "pure" accrual table, with no knowledge of payments, converted both at the contract FX
rate and at the daily mark-to-market rate. The recalculator then merges that table with the payments actually made and
derives interest paid, principal paid, unpaid interest carried forward and coverage metrics.
'''

# Python.
import re
import enum
import uuid
import types
import typing as t
import asyncio
import decimal
import logging
import datetime
import operator
import functools
import itertools
import collections
import dataclasses
import importlib.metadata

# Libs.
import typeguard
import dateutil.relativedelta

# Loancore version.
__version__ = importlib.metadata.version('loancore') if 'loancore' in importlib.metadata.packages_distributions() else 'DEV'

# Logger object.
_LOG = logging.getLogger('loancore')

# Zero as decimal.
_0 = decimal.Decimal()

# One as decimal.
_1 = decimal.Decimal(1)

# One hundred as decimal.
_100 = decimal.Decimal(100)

# Centi factor.
_CENTI = decimal.Decimal('0.01')

# Centesimal quantization, for money.
_Q = functools.partial(decimal.Decimal.quantize, exp=_CENTI, rounding=decimal.ROUND_HALF_UP)

# Four places quantization, for interest in the origin currency and ratios.
_Q4 = functools.partial(decimal.Decimal.quantize, exp=decimal.Decimal('0.0001'), rounding=decimal.ROUND_HALF_UP)

# Six places quantization, for FX rates.
_Q6 = functools.partial(decimal.Decimal.quantize, exp=decimal.Decimal('0.000001'), rounding=decimal.ROUND_HALF_UP)

# Eight places quantization, for periodic rates.
_Q8 = functools.partial(decimal.Decimal.quantize, exp=decimal.Decimal('0.00000001'), rounding=decimal.ROUND_HALF_UP)

# A day.
_DAY = datetime.timedelta(days=1)

# A month.
_MONTH = dateutil.relativedelta.relativedelta(months=1)

# A year.
_YEAR = dateutil.relativedelta.relativedelta(years=1)

# Strict ISO date, "YYYY-MM-DD".
_RE_DATE = re.compile(r'\d{4}-\d{2}-\d{2}')

# Default timeout, in seconds, of a single FX gateway call.
FX_TIMEOUT = 10.0

# A contract whose BRL balance falls to this value or below is settled.
SETTLEMENT_TOLERANCE = decimal.Decimal('0.01')

# Date input. Either a date or an ISO string.
_DATE = t.Union[datetime.date, str]

# Day count bases.
_DAY_COUNT_BASIS = t.Literal['30/360', 'ACT/360', 'ACT/365', 'BUS/252']

# Compounding regimes.
_COMPOUNDING = t.Literal['EXPONENTIAL', 'LINEAR']

# Rounding modes of an interest configuration.
_ROUNDING = t.Literal['HALF_UP', 'HALF_EVEN']

# Accrual table frequencies.
_FREQUENCY = t.Literal['DAILY', 'MONTHLY', 'YEARLY']

# Amortization systems.
_SYSTEM = t.Literal['PRICE', 'SAC']

# Installment periodicities.
_PERIODICITY = t.Literal['MONTHLY', 'QUARTERLY', 'SEMIANNUAL', 'ANNUAL']

# Interest leg indexers.
_INDEXER = t.Literal['FIXED', 'REFERENCE_RATE', 'FX_INDEXED', 'MANUAL']

# Interest leg roles.
_LEG_ROLE = t.Literal['RATE', 'ADJUSTMENT']

# Contract directions.
_DIRECTION = t.Literal['BORROWED', 'LENT']

# Contract statuses.
_STATUS = t.Literal['ACTIVE', 'SETTLED', 'OVERDUE', 'RENEGOTIATED']

# Payment flows.
_FLOW_TYPE = t.Literal['SCHEDULED', 'FLEXIBLE', 'BULLET', 'ACCRUAL_ONLY']

# Grace period kinds.
_GRACE_TYPE = t.Literal['INTEREST_ONLY', 'FULL']

# Ledger entry kinds.
_LEDGER_ENTRY_TYPE = t.Literal['CONTRACT_CREATION', 'PAYMENT', 'ADJUSTMENT', 'ACCRUAL']

# Yearly divisor per day count basis.
_YEARLY_DIVISOR = {'30/360': 360, 'ACT/360': 360, 'ACT/365': 365, 'BUS/252': 252}

# Months per installment, per periodicity.
_PERIODICITY_MONTHS = {'MONTHLY': 1, 'QUARTERLY': 3, 'SEMIANNUAL': 6, 'ANNUAL': 12}

# Step between two accrual boundaries, per frequency.
_FREQUENCY_STEP = {'DAILY': dateutil.relativedelta.relativedelta(days=1), 'MONTHLY': _MONTH, 'YEARLY': _YEAR}

# Errors. {{{
class LoanCoreError(Exception):
    '''Base class of every error raised by this module.'''

class InvalidDate(LoanCoreError, ValueError):
    def __init__(self, value: t.Any):
        super().__init__(f'invalid date "{value}", expected the YYYY-MM-DD format')

        self.value = value

class FxUnavailable(LoanCoreError):
    def __init__(self, currency: str, date: datetime.date):
        super().__init__(f'no {currency} exchange rate available for {date}')

        self.currency = currency

        self.date = date

class InvalidContractState(LoanCoreError):
    '''
    A contract, or an operation on it, breaks a business invariant.

    Carries every problem found, not just the first one, in the "problems" attribute.
    '''

    def __init__(self, problems: t.Iterable[str]):
        self.problems = list(problems)

        super().__init__('invalid contract state: ' + '; '.join(self.problems))

class UnsupportedDayCountBasis(LoanCoreError):
    def __init__(self, basis: t.Any):
        super().__init__(f'unsupported day count basis "{basis}"')

        self.basis = basis

class UnsupportedAmortizationSystem(LoanCoreError):
    def __init__(self, system: t.Any):
        super().__init__(f'unsupported amortization system "{system}"')

        self.system = system
# }}}

# Helpers. {{{
@typeguard.typechecked
def _parse_date(value: _DATE) -> datetime.date:
    '''
    Parses a date in the strict "YYYY-MM-DD" format. Dates pass through.

    >>> _parse_date('2024-02-29')
    datetime.date(2024, 2, 29)

    >>> _parse_date(datetime.date(2024, 1, 1))
    datetime.date(2024, 1, 1)

    >>> _parse_date('2023-02-29')  # doctest: +IGNORE_EXCEPTION_DETAIL
    Traceback (most recent call last):
        ...
    loancore.InvalidDate: invalid date "2023-02-29", expected the YYYY-MM-DD format

    >>> _parse_date('20240101')  # doctest: +IGNORE_EXCEPTION_DETAIL
    Traceback (most recent call last):
        ...
    loancore.InvalidDate: invalid date "20240101", expected the YYYY-MM-DD format
    '''

    if isinstance(value, datetime.datetime):
        return value.date()

    if isinstance(value, datetime.date):
        return value

    if not _RE_DATE.fullmatch(value):
        raise InvalidDate(value)

    try:
        return datetime.date.fromisoformat(value)

    except ValueError:
        raise InvalidDate(value) from None

def _count_weekdays(d0: datetime.date, d1: datetime.date) -> int:
    '''
    Counts the weekdays after "d0", up to and including "d1".

    >>> _count_weekdays(datetime.date(2024, 1, 5), datetime.date(2024, 1, 8))  # Friday to Monday.
    1

    >>> _count_weekdays(datetime.date(2024, 1, 1), datetime.date(2024, 1, 1))
    0
    '''

    if d1 <= d0:
        return 0

    weeks, rest = divmod((d1 - d0).days, 7)

    return weeks * 5 + sum(1 for i in range(1, rest + 1) if (d0 + i * _DAY).weekday() < 5)

def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)

def _new_id(prefix: str, day: datetime.date) -> str:
    return f'{prefix}-{day:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}'

def _plain(value: t.Any) -> t.Any:
    if dataclasses.is_dataclass(value):
        return {x.name: _plain(getattr(value, x.name)) for x in dataclasses.fields(value)}

    if isinstance(value, (list, tuple)):
        return [_plain(x) for x in value]

    if isinstance(value, decimal.Decimal):
        return str(value)

    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()

    return value

def _typed(tp: t.Any, value: t.Any) -> t.Any:
    if value is None:
        return None

    origin = t.get_origin(tp)

    if origin is t.Union:
        return _typed(next(x for x in t.get_args(tp) if x is not type(None)), value)

    if origin in (list, tuple):
        return origin(_typed(t.get_args(tp)[0], x) for x in value)

    if origin is t.Literal:
        return value

    if dataclasses.is_dataclass(tp):
        return from_record(tp, value)

    if tp is decimal.Decimal:
        return decimal.Decimal(value)

    if tp is datetime.datetime:
        return datetime.datetime.fromisoformat(value)

    if tp is datetime.date:
        return _parse_date(value)

    return value

def to_record(obj: t.Any) -> dict[str, t.Any]:
    '''
    Converts a record into a plain dictionary, with decimals as strings and dates as ISO strings.

    >>> to_record(FxRate(rate=decimal.Decimal('5.1234'), source='PTAX'))
    {'rate': '5.1234', 'source': 'PTAX'}
    '''

    return _plain(obj)

def from_record(cls: type, record: dict[str, t.Any]) -> t.Any:
    '''
    Builds a record of class "cls" out of a dictionary produced by "to_record".

    >>> from_record(FxRate, {'rate': '5.1234', 'source': 'PTAX'})
    FxRate(rate=Decimal('5.1234'), source='PTAX')
    '''

    hints = t.get_type_hints(cls)

    return cls(**{x.name: _typed(hints[x.name], record[x.name]) for x in dataclasses.fields(cls) if x.init and x.name in record})
# }}}

# Public API. Date arithmetic. {{{
@typeguard.typechecked
def get_yearly_divisor(basis: str) -> int:
    '''
    Returns the amount of days in a year of a day count basis.

    >>> get_yearly_divisor('30/360'), get_yearly_divisor('ACT/360'), get_yearly_divisor('ACT/365'), get_yearly_divisor('BUS/252')
    (360, 360, 365, 252)
    '''

    try:
        return _YEARLY_DIVISOR[basis]

    except KeyError:
        raise UnsupportedDayCountBasis(basis) from None

@typeguard.typechecked
def days_between(start: _DATE, end: _DATE, basis: str = 'ACT/365') -> int:
    '''
    Counts the days between two dates under a day count basis.

      • "30/360" subtracts year, month and day components, with 360 days per year and 30 days per month. A day in the
        month is never adjusted, so the count can be negative when "end" precedes "start".

      • "ACT/360" and "ACT/365" count calendar days. The count is never negative.

      • "BUS/252" counts weekdays after "start", up to and including "end". Holidays are not taken into account.

    >>> days_between('2024-01-31', '2024-02-29', '30/360')
    28

    >>> days_between('2024-01-01', '2024-01-31', 'ACT/365')
    30

    >>> days_between('2024-01-31', '2024-01-01', 'ACT/360')
    30

    >>> days_between('2024-01-05', '2024-01-12', 'BUS/252')
    5
    '''

    get_yearly_divisor(basis)

    d0 = _parse_date(start)
    d1 = _parse_date(end)

    if basis == '30/360':
        return (d1.year - d0.year) * 360 + (d1.month - d0.month) * 30 + (d1.day - d0.day)

    if basis == 'BUS/252':
        return _count_weekdays(d0, d1)

    return abs((d1 - d0).days)

@typeguard.typechecked
def periodic_rate(annual_rate: decimal.Decimal, compounding: str, basis: str, days: int) -> decimal.Decimal:
    '''
    Converts an annual rate, in percent, into the rate of a period of "days" days.

    >>> periodic_rate(decimal.Decimal(12), 'LINEAR', 'ACT/360', 30)
    Decimal('0.01')

    >>> _Q8(periodic_rate(decimal.Decimal(12), 'EXPONENTIAL', '30/360', 30))
    Decimal('0.00948879')
    '''

    div = get_yearly_divisor(basis)
    rat = annual_rate / _100

    if compounding == 'EXPONENTIAL':
        return (_1 + rat) ** (decimal.Decimal(days) / div) - _1

    if compounding == 'LINEAR':
        return rat * days / div

    raise ValueError(f'unsupported compounding "{compounding}"')

@typeguard.typechecked
def add_period(date: _DATE, count: int, periodicity: str = 'MONTHLY') -> datetime.date:
    '''
    Moves a date by a number of installment periods. Ends of month are clamped.

    >>> add_period('2024-01-31', 1)
    datetime.date(2024, 2, 29)

    >>> add_period('2024-01-31', 2, 'QUARTERLY')
    datetime.date(2024, 7, 31)
    '''

    if periodicity not in _PERIODICITY_MONTHS:
        raise ValueError(f'unsupported periodicity "{periodicity}"')

    return _parse_date(date) + _MONTH * (_PERIODICITY_MONTHS[periodicity] * count)

@typeguard.typechecked
def accrual_periods(start: _DATE, end: _DATE, frequency: str = 'DAILY') -> t.Generator[t.Tuple[datetime.date, datetime.date], None, None]:
    '''
    Splits a date range into accrual periods.

    Boundaries are always computed from the start date, so monthly periods starting on the 31st do not drift. When the
    range is not a whole number of periods, a final stub period ends on the end date.

    >>> list(accrual_periods('2024-01-31', '2024-04-15', 'MONTHLY'))  # doctest: +NORMALIZE_WHITESPACE
    [(datetime.date(2024, 1, 31), datetime.date(2024, 2, 29)),
     (datetime.date(2024, 2, 29), datetime.date(2024, 3, 31)),
     (datetime.date(2024, 3, 31), datetime.date(2024, 4, 15))]

    >>> list(accrual_periods('2024-01-01', '2024-01-01'))
    []
    '''

    if frequency not in _FREQUENCY_STEP:
        raise ValueError(f'unsupported frequency "{frequency}"')

    d0 = _parse_date(start)
    d1 = _parse_date(end)

    if d1 < d0:
        raise ValueError(f'end date {d1} precedes start date {d0}')

    ini = d0

    for k in itertools.count(1):
        nxt = d0 + _FREQUENCY_STEP[frequency] * k

        if nxt > d1:
            if ini < d1:
                yield ini, d1

            return

        yield ini, nxt

        ini = nxt
# }}}

# Public API. Amortization tables. {{{
@dataclasses.dataclass
class ScheduleRow:
    '''
    An entry of an amortization table.

      • "no" is the installment number, grace periods included.

      • "payment" is the installment value, interest plus principal.

      • "eff_rate" is the periodic rate used to compute the interest.
    '''

    no: int = 0

    date: t.Optional[datetime.date] = None

    opening_balance: decimal.Decimal = _0

    payment: decimal.Decimal = _0

    interest: decimal.Decimal = _0

    principal: decimal.Decimal = _0

    closing_balance: decimal.Decimal = _0

    eff_rate: decimal.Decimal = _0

def _check_system(system: str) -> None:
    if system not in ('PRICE', 'SAC'):
        raise UnsupportedAmortizationSystem(system)

@typeguard.typechecked
def calculate_pmt(principal: decimal.Decimal, rate: decimal.Decimal, installments: int) -> decimal.Decimal:
    '''
    Constant installment of an annuity. Not rounded.

    >>> _Q(calculate_pmt(decimal.Decimal(100000), decimal.Decimal('0.01'), 12))
    Decimal('8884.88')

    >>> calculate_pmt(decimal.Decimal(1200), _0, 12)
    Decimal('100')
    '''

    if installments < 1:
        raise ValueError('at least one installment is required')

    if rate == _0:
        return principal / installments

    fac = _1 + rate

    return principal * (fac - _1) / (_1 - fac ** -installments)

def _simulate(principal: decimal.Decimal, rate: decimal.Decimal, period: int, installments: int, system: str) -> t.Tuple[decimal.Decimal, decimal.Decimal]:
    _check_system(system)

    if not 1 <= period <= installments:
        raise ValueError(f'period {period} is out of the range 1..{installments}')

    pmt = calculate_pmt(principal, rate, installments)
    bal = principal

    for _ in range(period):
        itr = bal * rate
        amt = pmt - itr if system == 'PRICE' else principal / installments
        bal -= amt

    return itr, amt

@typeguard.typechecked
def interest_component(principal: decimal.Decimal, rate: decimal.Decimal, period: int, installments: int, system: str = 'PRICE') -> decimal.Decimal:
    '''
    Interest part of an installment, simulating the balance decay from the first period. Not rounded.

    >>> interest_component(decimal.Decimal(100000), decimal.Decimal('0.01'), 1, 12)
    Decimal('1000.00')
    '''

    return _simulate(principal, rate, period, installments, system)[0]

@typeguard.typechecked
def principal_component(principal: decimal.Decimal, rate: decimal.Decimal, period: int, installments: int, system: str = 'PRICE') -> decimal.Decimal:
    '''
    Principal part of an installment, simulating the balance decay from the first period. Not rounded.

    Under PRICE, adding the interest part of the same period gives the PMT.

    >>> _Q(principal_component(decimal.Decimal(100000), decimal.Decimal('0.01'), 1, 12))
    Decimal('7884.88')
    '''

    return _simulate(principal, rate, period, installments, system)[1]

@typeguard.typechecked
def amortize(
    principal: decimal.Decimal,
    rate: decimal.Decimal,
    installments: int,
    system: str = 'PRICE',
    dates: t.Optional[t.Sequence[datetime.date]] = None,
    first_no: int = 1
) -> t.Generator[ScheduleRow, None, None]:
    '''
    Generates a PRICE or SAC amortization table, rounded to cents.

    The last installment amortizes whatever balance is left, so the table always closes at exactly zero, and no
    closing balance is ever negative.
    '''

    _check_system(system)

    if dates is not None and len(dates) != installments:
        raise ValueError(f'{installments} installments but {len(dates)} dates')

    pmt = _Q(calculate_pmt(principal, rate, installments))
    sac = _Q(principal / installments)
    bal = _Q(principal)

    for i in range(installments):
        itr = _Q(bal * rate)

        if i == installments - 1:
            amt = bal

        else:
            amt = min(bal, pmt - itr if system == 'PRICE' else sac)

        yield ScheduleRow(
            no=first_no + i,
            date=dates[i] if dates else None,
            opening_balance=bal,
            payment=itr + amt,
            interest=itr,
            principal=amt,
            closing_balance=max(_0, bal - amt),
            eff_rate=_Q8(rate)
        )

        bal = max(_0, bal - amt)
# }}}

# Public API. Records. {{{
@dataclasses.dataclass
class InterestLeg:
    '''
    One component of a contract's rate.

    Rates are annual, in percent. "indexer_percent" scales the indexer part of the leg, and "spread_annual" is always
    compounded on top of it. "base_rate_annual" is the annual rate of the indexer, for indexers that need one.
    '''

    indexer: _INDEXER = 'FIXED'

    indexer_percent: decimal.Decimal = _100

    spread_annual: decimal.Decimal = _0

    base_rate_annual: t.Optional[decimal.Decimal] = None

    day_count_basis: t.Optional[_DAY_COUNT_BASIS] = None

    ptax_currency: t.Optional[str] = None

    role: _LEG_ROLE = 'RATE'

@dataclasses.dataclass
class InterestConfig:
    legs: list[InterestLeg] = dataclasses.field(default_factory=list)

    day_count_basis: _DAY_COUNT_BASIS = 'ACT/365'

    compounding: _COMPOUNDING = 'EXPONENTIAL'

    rounding: _ROUNDING = 'HALF_UP'

@dataclasses.dataclass
class ScheduledFlow:
    system: _SYSTEM = 'PRICE'

    periodicity: _PERIODICITY = 'MONTHLY'

    installments: int = 0

    first_payment_date: t.Optional[datetime.date] = None

    grace_periods: int = 0

    grace_type: t.Optional[_GRACE_TYPE] = None

@dataclasses.dataclass
class PaymentFlow:
    type: _FLOW_TYPE = 'FLEXIBLE'

    scheduled: t.Optional[ScheduledFlow] = None

    allow_early_payment: bool = True

    penalty_rate: t.Optional[decimal.Decimal] = None

@dataclasses.dataclass
class BalanceSnapshot:
    '''
    The balance of a contract at "last_update_date".

    The balance and the accrued interest are kept apart, both in the origin currency and in BRL.
    '''

    balance_origin: decimal.Decimal = _0

    balance_brl: decimal.Decimal = _0

    accrued_interest_origin: decimal.Decimal = _0

    accrued_interest_brl: decimal.Decimal = _0

    last_update_date: datetime.date = datetime.date.min

    next_payment_date: t.Optional[datetime.date] = None

    next_payment_amount: t.Optional[decimal.Decimal] = None

@dataclasses.dataclass
class Contract:
    '''
    A loan contract.

    The identity and the terms are fixed at creation. Only "current_balance", "status" and "updated_at" change
    afterwards, and only through the loan book.
    '''

    id: str = ''

    direction: _DIRECTION = 'BORROWED'

    counterparty: str = ''

    currency: str = 'BRL'

    principal_origin: decimal.Decimal = _0

    principal_brl: decimal.Decimal = _0

    start_date: datetime.date = datetime.date.min

    maturity_date: datetime.date = datetime.date.max

    interest_config: InterestConfig = dataclasses.field(default_factory=InterestConfig)

    payment_flow: PaymentFlow = dataclasses.field(default_factory=PaymentFlow)

    current_balance: BalanceSnapshot = dataclasses.field(default_factory=BalanceSnapshot)

    status: _STATUS = 'ACTIVE'

    contract_fx_rate: t.Optional[decimal.Decimal] = None

    contract_fx_date: t.Optional[datetime.date] = None

    created_at: t.Optional[datetime.datetime] = None

    updated_at: t.Optional[datetime.datetime] = None

    notes: t.Optional[str] = None

@dataclasses.dataclass
class Payment:
    '''
    A cash event against a contract.

    "amount_origin" and "amount_brl" are derived from the amount actually paid, in "currency", with "fx_rate".
    '''

    id: str = ''

    contract_id: str = ''

    payment_date: datetime.date = datetime.date.min

    amount_origin: decimal.Decimal = _0

    amount_brl: decimal.Decimal = _0

    currency: str = 'BRL'

    fx_rate: decimal.Decimal = _1

    fx_source: str = ''

    description: t.Optional[str] = None

    created_at: t.Optional[datetime.datetime] = None

@dataclasses.dataclass(frozen=True)
class LedgerEntry:
    '''
    An immutable, dated record of a balance affecting event.

    Amounts are signed: payments are negative. The balance after fields hold the contract balance, interest excluded,
    right after the event.
    '''

    id: str = ''

    contract_id: str = ''

    entry_date: datetime.date = datetime.date.min

    type: _LEDGER_ENTRY_TYPE = 'CONTRACT_CREATION'

    amount_origin: decimal.Decimal = _0

    amount_brl: decimal.Decimal = _0

    fx_rate: decimal.Decimal = _1

    fx_source: str = ''

    balance_after_origin: decimal.Decimal = _0

    balance_after_brl: decimal.Decimal = _0

    description: t.Optional[str] = None

    created_at: t.Optional[datetime.datetime] = None

@dataclasses.dataclass(frozen=True)
class FxRate:
    rate: decimal.Decimal = _1

    source: str = ''

@dataclasses.dataclass
class AccrualRow:
    '''
    The accrual of a single period, "start_date" to "date", with no knowledge of payments.

    Balances come in three flavours: origin currency, BRL at the contract rate, and BRL at the mark-to-market rate of
    the period's end. The FX variation fields hold the difference between the last two.
    '''

    start_date: datetime.date = datetime.date.min

    date: datetime.date = datetime.date.min

    days: int = 0

    eff_rate: decimal.Decimal = _0

    opening_balance_origin: decimal.Decimal = _0

    interest_origin: decimal.Decimal = _0

    closing_balance_origin: decimal.Decimal = _0

    accrued_interest_origin: decimal.Decimal = _0

    fx_rate_contract: decimal.Decimal = _1

    fx_source_contract: str = ''

    opening_balance_brl_contract: decimal.Decimal = _0

    interest_brl_contract: decimal.Decimal = _0

    closing_balance_brl_contract: decimal.Decimal = _0

    accrued_interest_brl_contract: decimal.Decimal = _0

    fx_rate_mtm: decimal.Decimal = _1

    fx_source_mtm: str = ''

    opening_balance_brl_mtm: decimal.Decimal = _0

    interest_brl_mtm: decimal.Decimal = _0

    closing_balance_brl_mtm: decimal.Decimal = _0

    accrued_interest_brl_mtm: decimal.Decimal = _0

    fx_variation_principal: decimal.Decimal = _0

    fx_variation_interest: decimal.Decimal = _0

    fx_variation_total: decimal.Decimal = _0

    fx_variation_percent: decimal.Decimal = _0

@dataclasses.dataclass
class RecalculatedAccrualRow(AccrualRow):
    '''
    An accrual row, recomputed with the payments made.

      • "interest_pending_*" is the interest accrued but neither paid nor capitalised.

      • "recalculated_balance_*" is the interest bearing balance carried to the next event.

      • "interest_coverage_ratio" is the interest paid over the interest accrued in the period.

      • "cash_vs_accrual_*" is the payment minus the interest accrued in the period.
    '''

    payment_id: t.Optional[str] = None

    is_payment: bool = False

    total_payment_origin: decimal.Decimal = _0

    total_payment_brl: decimal.Decimal = _0

    interest_paid_origin: decimal.Decimal = _0

    interest_paid_brl: decimal.Decimal = _0

    principal_paid_origin: decimal.Decimal = _0

    principal_paid_brl: decimal.Decimal = _0

    interest_pending_origin: decimal.Decimal = _0

    interest_pending_brl: decimal.Decimal = _0

    recalculated_balance_origin: decimal.Decimal = _0

    recalculated_balance_brl: decimal.Decimal = _0

    interest_delta_origin: decimal.Decimal = _0

    interest_delta_brl: decimal.Decimal = _0

    interest_coverage_ratio: decimal.Decimal = _0

    amortization_effect_origin: decimal.Decimal = _0

    amortization_effect_brl: decimal.Decimal = _0

    cash_vs_accrual_origin: decimal.Decimal = _0

    cash_vs_accrual_brl: decimal.Decimal = _0
# }}}

# Public API. Validation. {{{
def validate_interest_config(config: InterestConfig) -> list[str]:
    '''Lists the problems of an interest configuration. An empty list means it is valid.'''

    problems = []

    if config.day_count_basis not in _YEARLY_DIVISOR:
        problems.append(f'unsupported day count basis "{config.day_count_basis}"')

    if config.compounding not in ('EXPONENTIAL', 'LINEAR'):
        problems.append(f'unsupported compounding "{config.compounding}"')

    if not config.legs:
        problems.append('at least one interest leg is required')

    elif not any(x.role == 'RATE' for x in config.legs):
        problems.append('at least one interest leg must have the RATE role')

    for i, leg in enumerate(config.legs, 1):
        if leg.indexer not in ('FIXED', 'REFERENCE_RATE', 'FX_INDEXED', 'MANUAL'):
            problems.append(f'leg {i} has an unsupported indexer "{leg.indexer}"')

        if leg.indexer_percent <= _0:
            problems.append(f'leg {i} indexer percentage must be positive')

        if leg.spread_annual < _0:
            problems.append(f'leg {i} spread must not be negative')

        if leg.base_rate_annual is not None and leg.base_rate_annual < _0:
            problems.append(f'leg {i} base rate must not be negative')

        if leg.day_count_basis is not None and leg.day_count_basis not in _YEARLY_DIVISOR:
            problems.append(f'leg {i} has an unsupported day count basis "{leg.day_count_basis}"')

    return problems

def validate_payment_flow(flow: PaymentFlow) -> list[str]:
    problems = []

    if flow.type not in ('SCHEDULED', 'FLEXIBLE', 'BULLET', 'ACCRUAL_ONLY'):
        problems.append(f'unsupported payment flow "{flow.type}"')

    if flow.type == 'SCHEDULED':
        sch = flow.scheduled

        if sch is None:
            problems.append('a scheduled flow requires its schedule')

        else:
            if sch.system not in ('PRICE', 'SAC'):
                problems.append(f'unsupported amortization system "{sch.system}"')

            if sch.periodicity not in _PERIODICITY_MONTHS:
                problems.append(f'unsupported periodicity "{sch.periodicity}"')

            if sch.installments < 1:
                problems.append('the number of installments must be positive')

            if sch.grace_periods < 0:
                problems.append('grace periods must not be negative')

            if sch.grace_periods > 0 and sch.grace_type not in ('INTEREST_ONLY', 'FULL'):
                problems.append('grace periods require a grace type')

    return problems

def validate_contract_state(contract: Contract, today: datetime.date) -> list[str]:
    '''
    Lists the broken invariants of a contract's balance snapshot.

    Balances are never negative, and the snapshot date lies between the contract start and today.
    '''

    problems = []
    snap = contract.current_balance

    for name in ('balance_origin', 'balance_brl', 'accrued_interest_origin', 'accrued_interest_brl'):
        if getattr(snap, name) < _0:
            problems.append(f'{name.replace("_", " ")} is negative')

    if snap.last_update_date < contract.start_date:
        problems.append(f'last update {snap.last_update_date} precedes the contract start {contract.start_date}')

    if snap.last_update_date > today:
        problems.append(f'last update {snap.last_update_date} is in the future')

    if not any(x.role == 'RATE' for x in contract.interest_config.legs):
        problems.append('at least one interest leg must have the RATE role')

    return problems

def validate_payment(contract: Contract, amount: decimal.Decimal, payment_date: datetime.date) -> list[str]:
    problems = []

    if contract.status == 'SETTLED':
        problems.append(f'contract {contract.id} is already settled')

    if contract.status == 'OVERDUE':
        problems.append(f'contract {contract.id} is overdue and must be renegotiated first')

    if contract.current_balance.balance_brl <= _0:
        problems.append(f'contract {contract.id} has no outstanding balance')

    if amount <= _0:
        problems.append('the payment amount must be positive')

    if payment_date < contract.start_date:
        problems.append(f'payment date {payment_date} precedes the contract start {contract.start_date}')

    elif payment_date < contract.current_balance.last_update_date:
        problems.append(f'payment date {payment_date} precedes the last update {contract.current_balance.last_update_date}')

    return problems
# }}}

# Public API. FX gateway. {{{
class FxGateway:
    '''
    Source of exchange rates to BRL.

    Implementations return "None" when they have no rate. The engine owns every fallback past that point.
    '''

    async def get_conversion_rate(self, date: datetime.date, currency: str, contract_fallback_rate: t.Optional[decimal.Decimal] = None) -> t.Optional[FxRate]:
        '''
        Returns the rate of a currency at a date.

        A positive contract fallback rate, when given, may be returned in place of a market rate.
        '''

        raise NotImplementedError()

    async def get_last_available_rate(self, currency: str) -> t.Optional[FxRate]:
        '''
        Returns the most recent rate known for a currency, regardless of its date.
        '''

        raise NotImplementedError()

    async def sync_ptax(self, start_date: datetime.date, end_date: datetime.date, currencies: t.Sequence[str]) -> None:
        '''
        Refreshes the central bank rates of a date range. Best effort.
        '''

        raise NotImplementedError()

class InMemoryFxGateway(FxGateway):
    '''
    An FX gateway fed by hand.

    Lookup order for a date: BRL identity, then a positive contract rate, then a MANUAL quote, then a PTAX quote.
    '''

    def __init__(self, quotes: t.Iterable[t.Tuple[str, _DATE, decimal.Decimal]] = ()):
        self._quotes: dict[t.Tuple[str, datetime.date, str], decimal.Decimal] = {}

        self.synced: list[t.Tuple[datetime.date, datetime.date, t.Tuple[str, ...]]] = []

        for currency, date, rate in quotes:
            self.add_rate(currency, date, rate)

    @typeguard.typechecked
    def add_rate(self, currency: str, date: _DATE, rate: decimal.Decimal, kind: t.Literal['PTAX', 'MANUAL'] = 'PTAX') -> None:
        if rate <= _0:
            raise ValueError(f'exchange rates must be positive, got {rate}')

        self._quotes[currency, _parse_date(date), kind] = rate

    async def get_conversion_rate(self, date, currency, contract_fallback_rate=None):
        if currency == 'BRL':
            return FxRate(rate=_1, source='BRL')

        if contract_fallback_rate and contract_fallback_rate > _0:
            return FxRate(rate=contract_fallback_rate, source='CONTRACT')

        for kind in ('MANUAL', 'PTAX'):
            if (currency, date, kind) in self._quotes:
                return FxRate(rate=self._quotes[currency, date, kind], source=kind)

        _LOG.debug(f'no {currency} quote for {date}')

        return None

    async def get_last_available_rate(self, currency):
        if currency == 'BRL':
            return FxRate(rate=_1, source='BRL')

        known = sorted((d, k == 'MANUAL', r, k) for (c, d, k), r in self._quotes.items() if c == currency)

        if known:
            return FxRate(rate=known[-1][2], source=known[-1][3])

        return None

    async def sync_ptax(self, start_date, end_date, currencies):
        self.synced.append((start_date, end_date, tuple(currencies)))
# }}}

# Public API. Ledger and payments. {{{
class LedgerStore:
    '''
    Append-only, per contract, log of ledger entries.

    Readers get tuples, so a reader never observes an append made after its read.
    '''

    def __init__(self):
        self._entries: dict[str, list[LedgerEntry]] = {}

    def append(self, entry: LedgerEntry) -> None:
        lst = self._entries.setdefault(entry.contract_id, [])

        if lst and entry.entry_date < lst[-1].entry_date:
            _LOG.warning(f'ledger entry {entry.id} dated {entry.entry_date} was appended after an entry dated {lst[-1].entry_date}')

        lst.append(entry)

    def entries(self, contract_id: str) -> t.Tuple[LedgerEntry, ...]:
        return tuple(self._entries.get(contract_id, ()))

    def dump(self) -> dict[str, list[dict[str, t.Any]]]:
        return {k: [to_record(x) for x in v] for k, v in self._entries.items()}

    def load(self, data: dict[str, list[dict[str, t.Any]]]) -> None:
        self._entries = {k: [from_record(LedgerEntry, x) for x in v] for k, v in data.items()}

@typeguard.typechecked
def allocate_payment(amount: decimal.Decimal, accrued_interest: decimal.Decimal, balance: decimal.Decimal) -> types.SimpleNamespace:
    '''
    Splits a payment, interest first, then principal.

    Neither the interest nor the balance left ever goes negative. Whatever exceeds the balance is reported as "excess".

    >>> x = allocate_payment(decimal.Decimal(3000), decimal.Decimal(1000), decimal.Decimal(50000))
    >>> x.interest_paid, x.principal_paid, x.accrued_interest, x.balance, x.excess
    (Decimal('1000'), Decimal('2000'), Decimal('0'), Decimal('48000'), Decimal('0'))
    '''

    interest_paid = min(amount, max(_0, accrued_interest))
    principal_paid = amount - interest_paid

    return types.SimpleNamespace(
        interest_paid=interest_paid,
        principal_paid=principal_paid,
        accrued_interest=max(_0, accrued_interest - interest_paid),
        balance=max(_0, balance - principal_paid),
        excess=max(_0, principal_paid - balance)
    )

class PaymentEngine:
    '''
    Registers payments, converts them across currencies and writes them to the ledger.

    Every FX lookup is bounded by "fx_timeout" seconds. A lookup that times out counts as a missing rate.
    '''

    def __init__(self, gateway: FxGateway, ledger: t.Optional[LedgerStore] = None, *, fx_timeout: float = FX_TIMEOUT):
        self.gateway = gateway

        self.ledger = ledger if ledger is not None else LedgerStore()

        self.fx_timeout = fx_timeout

        self._payments: dict[str, list[Payment]] = {}

    async def _bounded(self, coro: t.Awaitable[t.Optional[FxRate]], what: str) -> t.Optional[FxRate]:
        try:
            return await asyncio.wait_for(coro, self.fx_timeout)

        except asyncio.TimeoutError:
            _LOG.warning(f'FX lookup of {what} timed out after {self.fx_timeout}s')

            return None

    @typeguard.typechecked
    async def lookup_rate(self, date: datetime.date, currency: str, contract_fallback: t.Optional[decimal.Decimal] = None) -> t.Optional[FxRate]:
        '''Single gateway lookup, without any fallback.'''

        return await self._bounded(self.gateway.get_conversion_rate(date, currency, contract_fallback), f'{currency} on {date}')

    @typeguard.typechecked
    async def require_rate(self, date: datetime.date, currency: str, contract_fallback: t.Optional[decimal.Decimal] = None) -> FxRate:
        '''
        Resolves a rate, or fails with "FxUnavailable".

        Tries, in order: the gateway for the date, the gateway's last available rate, the BRL identity, and the
        contract rate.
        '''

        if direct := await self.lookup_rate(date, currency, contract_fallback):
            return direct

        if last := await self._bounded(self.gateway.get_last_available_rate(currency), f'last {currency} rate'):
            _LOG.warning(f'using the last available {currency} rate for {date}')

            return FxRate(rate=last.rate, source=f'{last.source} (last available)')

        if currency == 'BRL':
            return FxRate(rate=_1, source='BRL')

        if contract_fallback:
            _LOG.warning(f'using the contract rate for {currency} on {date}')

            return FxRate(rate=contract_fallback, source='CONTRACT')

        raise FxUnavailable(currency, date)

    @typeguard.typechecked
    def register_initial_entry(self, contract: Contract, fx_rate: decimal.Decimal, fx_source: str) -> LedgerEntry:
        entry = LedgerEntry(
            id=_new_id('LED', contract.start_date),
            contract_id=contract.id,
            entry_date=contract.start_date,
            type='CONTRACT_CREATION',
            amount_origin=contract.principal_origin,
            amount_brl=contract.principal_brl,
            fx_rate=fx_rate,
            fx_source=fx_source,
            balance_after_origin=contract.principal_origin,
            balance_after_brl=contract.principal_brl,
            description='Contract creation',
            created_at=_now()
        )

        self.ledger.append(entry)

        return entry

    @typeguard.typechecked
    async def convert_payment(
        self,
        contract: Contract,
        amount: decimal.Decimal,
        payment_date: datetime.date,
        currency: t.Optional[str] = None,
        description: t.Optional[str] = None
    ) -> Payment:
        '''
        Builds a payment, converting its amount into the origin currency and into BRL. Stores nothing.

        A payment in a third currency goes through BRL: its own rate converts it to BRL, and the contract currency
        rate converts the BRL amount to the origin currency.
        '''

        ccy = (currency or 'BRL').upper()

        if ccy == contract.currency:
            fxr = await self.require_rate(payment_date, ccy, contract.contract_fx_rate)
            amount_origin, amount_brl = amount, amount * fxr.rate

        elif ccy == 'BRL':
            fxr = await self.require_rate(payment_date, contract.currency, contract.contract_fx_rate)
            amount_origin, amount_brl = amount / fxr.rate, amount

        else:
            own = await self.require_rate(payment_date, ccy)
            fxr = await self.require_rate(payment_date, contract.currency, contract.contract_fx_rate)
            amount_brl = amount * own.rate
            amount_origin = amount_brl / fxr.rate
            fxr = FxRate(rate=fxr.rate, source=f'{fxr.source} · via {ccy}')

        return Payment(
            id=_new_id('PAY', payment_date),
            contract_id=contract.id,
            payment_date=payment_date,
            amount_origin=_Q(amount_origin),
            amount_brl=_Q(amount_brl),
            currency=ccy,
            fx_rate=_Q6(fxr.rate),
            fx_source=fxr.source,
            description=description,
            created_at=_now()
        )

    def _store_payment(self, payment: Payment) -> None:
        self._payments.setdefault(payment.contract_id, []).append(payment)

        _LOG.info(f'payment {payment.id} of {payment.amount_brl} BRL registered against {payment.contract_id}')

    @typeguard.typechecked
    async def register_payment(
        self,
        contract: Contract,
        amount: decimal.Decimal,
        payment_date: _DATE,
        currency: t.Optional[str] = None,
        description: t.Optional[str] = None
    ) -> Payment:
        payment = await self.convert_payment(contract, amount, _parse_date(payment_date), currency, description)

        self._store_payment(payment)

        return payment

    def _scale_balance_proportionally(self, contract: Contract, balance_brl: decimal.Decimal, accrued_brl: decimal.Decimal) -> t.Tuple[decimal.Decimal, decimal.Decimal]:
        '''
        Converts BRL balances back to the origin currency without an exchange rate.

        The principal in the origin currency is scaled by the share of the BRL principal still owed. Accrued interest
        is scaled by the share of the BRL accrued interest still owed.
        '''

        snap = contract.current_balance

        bal = contract.principal_origin * balance_brl / contract.principal_brl if contract.principal_brl > _0 else _0
        acc = snap.accrued_interest_origin * accrued_brl / snap.accrued_interest_brl if snap.accrued_interest_brl else _0

        return _Q(bal), _Q(acc)

    @typeguard.typechecked
    async def calculate_amortization(self, contract: Contract, payment: Payment, date: _DATE) -> BalanceSnapshot:
        '''
        Applies a payment to the contract's current balance, interest first, in BRL.

        The new BRL balances are converted back to the origin currency with the rate of "date". When no rate can be
        resolved, the balances are scaled in proportion to the original principal instead.
        '''

        day = _parse_date(date)
        snap = contract.current_balance
        alloc = allocate_payment(payment.amount_brl, snap.accrued_interest_brl, snap.balance_brl)

        try:
            fxr = await self.require_rate(day, contract.currency, contract.contract_fx_rate)

        except FxUnavailable:
            _LOG.warning(f'converting the balance of {contract.id} on {day} by proportional scaling')

            balance_origin, accrued_origin = self._scale_balance_proportionally(contract, alloc.balance, alloc.accrued_interest)

        else:
            balance_origin, accrued_origin = _Q(alloc.balance / fxr.rate), _Q(alloc.accrued_interest / fxr.rate)

        return dataclasses.replace(
            snap,
            balance_origin=balance_origin,
            balance_brl=_Q(alloc.balance),
            accrued_interest_origin=accrued_origin,
            accrued_interest_brl=_Q(alloc.accrued_interest),
            last_update_date=day
        )

    @typeguard.typechecked
    async def prepare_payment(
        self,
        contract: Contract,
        amount: decimal.Decimal,
        payment_date: _DATE,
        currency: t.Optional[str] = None,
        description: t.Optional[str] = None
    ) -> types.SimpleNamespace:
        '''
        Converts a payment and computes the resulting balance. Resolves every rate it needs, but writes nothing.
        '''

        day = _parse_date(payment_date)
        payment = await self.convert_payment(contract, amount, day, currency, description)
        new_balance = await self.calculate_amortization(contract, payment, day)

        return types.SimpleNamespace(payment=payment, new_balance=new_balance)

    @typeguard.typechecked
    def commit_payment(self, contract: Contract, payment: Payment, new_balance: BalanceSnapshot) -> LedgerEntry:
        entry = LedgerEntry(
            id=_new_id('LED', payment.payment_date),
            contract_id=contract.id,
            entry_date=payment.payment_date,
            type='PAYMENT',
            amount_origin=-payment.amount_origin,
            amount_brl=-payment.amount_brl,
            fx_rate=payment.fx_rate,
            fx_source=payment.fx_source,
            balance_after_origin=new_balance.balance_origin,
            balance_after_brl=new_balance.balance_brl,
            description=payment.description or 'Payment',
            created_at=_now()
        )

        self._store_payment(payment)

        self.ledger.append(entry)

        return entry

    @typeguard.typechecked
    async def apply_payment(
        self,
        contract: Contract,
        amount: decimal.Decimal,
        payment_date: _DATE,
        currency: t.Optional[str] = None,
        description: t.Optional[str] = None
    ) -> types.SimpleNamespace:
        '''
        Registers a payment, computes the new balance and writes the PAYMENT ledger entry.

        Nothing is written unless every rate was resolved. The contract itself is not modified; that is up to the
        caller.
        '''

        out = await self.prepare_payment(contract, amount, payment_date, currency, description)

        out.ledger_entry = self.commit_payment(contract, out.payment, out.new_balance)

        return out

    @typeguard.typechecked
    def get_balance_at_date(self, contract: Contract, target_date: _DATE) -> types.SimpleNamespace:
        '''
        Balance of a contract as of the latest ledger entry dated on or before "target_date".

        With no ledger at all, returns the current balance. When every entry is later than the target date, returns
        the original principal. Interest accrued since the entry is not interpolated.
        '''

        day = _parse_date(target_date)
        lst = sorted(self.ledger.entries(contract.id), key=operator.attrgetter('entry_date'))

        if not lst:
            _LOG.debug(f'{contract.id} has no ledger, using its current balance')

            return types.SimpleNamespace(balance_origin=contract.current_balance.balance_origin, balance_brl=contract.current_balance.balance_brl)

        ent = None

        for x in lst:
            if x.entry_date > day:
                break

            ent = x

        if ent is None:
            return types.SimpleNamespace(balance_origin=contract.principal_origin, balance_brl=contract.principal_brl)

        return types.SimpleNamespace(balance_origin=ent.balance_after_origin, balance_brl=ent.balance_after_brl)

    @typeguard.typechecked
    def get_payment_history(self, contract_id: str) -> t.Tuple[Payment, ...]:
        return tuple(self._payments.get(contract_id, ()))

    @typeguard.typechecked
    def get_total_payments(self, contract_id: str) -> types.SimpleNamespace:
        lst = self._payments.get(contract_id, [])

        return types.SimpleNamespace(
            total_brl=_Q(sum((x.amount_brl for x in lst), _0)),
            total_origin=_Q(sum((x.amount_origin for x in lst), _0)),
            count=len(lst)
        )

    def dump(self) -> dict[str, list[dict[str, t.Any]]]:
        return {k: [to_record(x) for x in v] for k, v in self._payments.items()}

    def load(self, data: dict[str, list[dict[str, t.Any]]]) -> None:
        self._payments = {k: [from_record(Payment, x) for x in v] for k, v in data.items()}
# }}}

# Public API. Accruals. {{{
def _leg_base_rate(config: InterestConfig) -> decimal.Decimal:
    if not config.legs:
        return _0

    leg = config.legs[0]

    return leg.base_rate_annual if leg.base_rate_annual is not None else leg.spread_annual

class AccrualScheduler:
    '''
    Builds pure accrual tables and amortization tables for contracts.

    The rate of a period is the sum of the effective rates of the contract's legs. Each leg's effective rate is
    "(1 + indexer × percentage) × (1 + spread) - 1", all rates periodic.
    '''

    def __init__(self, payments: PaymentEngine):
        self.payments = payments

    async def _leg_rate(self, contract: Contract, leg: InterestLeg, start: datetime.date, end: datetime.date, days: int) -> decimal.Decimal:
        cfg = contract.interest_config
        basis = leg.day_count_basis or cfg.day_count_basis
        idx = _0

        if leg.indexer == 'FX_INDEXED':
            ccy = leg.ptax_currency or contract.currency
            fx0 = await self.payments.lookup_rate(start, ccy)
            fx1 = await self.payments.lookup_rate(end, ccy)

            if fx0 and fx1 and fx0.rate > _0:
                idx = fx1.rate / fx0.rate - _1

            else:
                _LOG.warning(f'{ccy} variation between {start} and {end} is unknown, using zero')

        elif leg.indexer == 'MANUAL':
            base = leg.base_rate_annual if leg.base_rate_annual is not None else leg.spread_annual

            if base > _0:
                idx = periodic_rate(base, cfg.compounding, basis, days)

        elif leg.indexer == 'REFERENCE_RATE':
            if not leg.base_rate_annual:
                _LOG.warning(f'no base rate for the {leg.indexer} leg of {contract.id}, using zero')

            else:
                idx = periodic_rate(leg.base_rate_annual, cfg.compounding, basis, days)

        spr = periodic_rate(leg.spread_annual, cfg.compounding, basis, days)

        return (_1 + idx * leg.indexer_percent / _100) * (_1 + spr) - _1

    @typeguard.typechecked
    async def effective_rate(self, contract: Contract, start: _DATE, end: _DATE, days: int) -> decimal.Decimal:
        '''Periodic rate of a contract between two dates, all legs included.'''

        d0, d1 = _parse_date(start), _parse_date(end)
        rat = _0

        for leg in contract.interest_config.legs:
            rat += await self._leg_rate(contract, leg, d0, d1, days)

        return rat

    @typeguard.typechecked
    async def build_accrual_rows(
        self,
        contract: Contract,
        start_date: _DATE,
        end_date: _DATE,
        frequency: str = 'DAILY',
        *,
        from_ledger: bool = False
    ) -> list[AccrualRow]:
        '''
        Builds the pure accrual table of a contract, one row per period.

        The first opening balance is the principal, or, with "from_ledger", the balance reconstructed from the ledger
        at the start date. Interest is never paid, so each row's closing balance is the next row's opening balance.

        The mark-to-market rate of a row is the gateway's rate for the row's date, with no fallback other than the
        contract rate itself, labelled as such.
        '''

        cfg = contract.interest_config
        ini = _parse_date(start_date)

        if from_ledger:
            bal = self.payments.get_balance_at_date(contract, ini).balance_origin

        else:
            bal = contract.principal_origin

        if contract.contract_fx_rate:
            fxc = FxRate(rate=contract.contract_fx_rate, source='CONTRACT')

        elif contract.principal_origin > _0:
            fxc = FxRate(rate=_Q6(contract.principal_brl / contract.principal_origin), source='INCEPTION')

        else:
            fxc = FxRate(rate=_1, source='INCEPTION')

        _LOG.info(f'building {frequency} accruals of {contract.id} from {ini} to {end_date}')

        rows = []
        acc = acc_c = acc_m = _0

        for d0, d1 in accrual_periods(ini, end_date, frequency):
            days = days_between(d0, d1, cfg.day_count_basis)
            eff = await self.effective_rate(contract, d0, d1, days)
            itr = _Q4(bal * eff)
            end = bal + itr

            if contract.currency == 'BRL':
                fxm = FxRate(rate=_1, source='BRL')

            elif (fxm := await self.payments.lookup_rate(d1, contract.currency)) is None:
                fxm = FxRate(rate=fxc.rate, source='CONTRACT (PTAX UNAVAILABLE)')

            acc += itr
            acc_c += _Q(itr * fxc.rate)
            acc_m += _Q(itr * fxm.rate)

            rows.append(AccrualRow(
                start_date=d0,
                date=d1,
                days=days,
                eff_rate=_Q8(eff),
                opening_balance_origin=bal,
                interest_origin=itr,
                closing_balance_origin=end,
                accrued_interest_origin=acc,
                fx_rate_contract=fxc.rate,
                fx_source_contract=fxc.source,
                opening_balance_brl_contract=_Q(bal * fxc.rate),
                interest_brl_contract=_Q(itr * fxc.rate),
                closing_balance_brl_contract=_Q(end * fxc.rate),
                accrued_interest_brl_contract=acc_c,
                fx_rate_mtm=fxm.rate,
                fx_source_mtm=fxm.source,
                opening_balance_brl_mtm=_Q(bal * fxm.rate),
                interest_brl_mtm=_Q(itr * fxm.rate),
                closing_balance_brl_mtm=_Q(end * fxm.rate),
                accrued_interest_brl_mtm=acc_m,
                fx_variation_principal=_Q(bal * (fxm.rate - fxc.rate)),
                fx_variation_interest=_Q(itr * (fxm.rate - fxc.rate)),
                fx_variation_total=_Q(end * fxm.rate - end * fxc.rate),
                fx_variation_percent=_Q4((fxm.rate - fxc.rate) / fxc.rate * _100) if fxc.rate > _0 else _0
            ))

            bal = end

        return rows

    @typeguard.typechecked
    async def build_schedule_rows(self, contract: Contract) -> list[ScheduleRow]:
        '''
        Builds the amortization table of a scheduled contract.

        The periodic rate is the contract's effective rate between its start and the first payment date. Grace
        periods come first: INTEREST_ONLY pays the interest, FULL adds it to the balance.
        '''

        flow = contract.payment_flow

        if flow.type != 'SCHEDULED' or flow.scheduled is None:
            raise InvalidContractState([f'contract {contract.id} has no payment schedule'])

        sch = flow.scheduled
        first = sch.first_payment_date or add_period(contract.start_date, 1, sch.periodicity)
        days = max(1, days_between(contract.start_date, first, contract.interest_config.day_count_basis))
        rate = await self.effective_rate(contract, contract.start_date, first, days)
        dates = [add_period(first, i, sch.periodicity) for i in range(sch.grace_periods + sch.installments)]

        rows = []
        bal = _Q(contract.principal_origin)

        for i in range(sch.grace_periods):
            itr = _Q(bal * rate)

            if sch.grace_type == 'FULL':
                rows.append(ScheduleRow(no=i + 1, date=dates[i], opening_balance=bal, interest=itr, closing_balance=bal + itr, eff_rate=_Q8(rate)))

                bal += itr

            else:
                rows.append(ScheduleRow(no=i + 1, date=dates[i], opening_balance=bal, payment=itr, interest=itr, closing_balance=bal, eff_rate=_Q8(rate)))

        rows.extend(amortize(bal, rate, sch.installments, sch.system, dates[sch.grace_periods:], sch.grace_periods + 1))

        return rows

def _merge_events(rows: t.Sequence[AccrualRow], payments: t.Iterable[Payment]) -> t.Generator[t.Tuple[AccrualRow, t.Optional[Payment]], None, None]:
    '''
    Merges accrual rows and payments into one chronological stream of "(row, payment)" pairs.

    A payment on the same date as an accrual boundary replaces the boundary. Several payments on the same date are all
    kept, in their original order. A payment is paired with the first row ending on or after its date, or with the last
    row, whose FX snapshot it inherits.
    '''

    pay = sorted(payments, key=operator.attrgetter('payment_date'))
    dts = {x.payment_date for x in pay}
    evs = [(x.payment_date, 0, i, None, x) for i, x in enumerate(pay)]
    evs += [(x.date, 1, i, x, None) for i, x in enumerate(rows) if x.date not in dts]

    for date, _, _, row, payment in sorted(evs, key=lambda x: x[:3]):
        if payment is not None:
            row = next((x for x in rows if x.date >= date), rows[-1])

        yield row, payment

def _recalculated(row: AccrualRow, **kwargs: t.Any) -> RecalculatedAccrualRow:
    '''Copies a pure row into a recalculated one. Keyword arguments override the copied fields.'''

    values = {x.name: getattr(row, x.name) for x in dataclasses.fields(AccrualRow)}

    values.update(kwargs)

    return RecalculatedAccrualRow(**values)

@typeguard.typechecked
def recalculate(
    pure_rows: t.Sequence[AccrualRow],
    payments: t.Sequence[Payment],
    interest_config: InterestConfig,
    principal_origin: decimal.Decimal
) -> list[RecalculatedAccrualRow]:
    '''
    Recalculates a pure accrual table with the payments actually made.

    The merged events are folded left to right over two values: the running principal, and the unpaid interest.

      1. Interest accrues on the running principal since the previous event, at the first leg's base annual rate (its
         spread, when it has no base rate).

      2. A payment covers the unpaid interest first. The rest amortizes the running principal, floored at zero as in
         "allocate_payment".

      3. Under exponential compounding, unpaid interest left at an event that is not a payment is capitalised into the
         running principal. Under linear compounding, it stays as a receivable.

    BRL values are converted with each event's mark-to-market rate, and contract rate fields with the contract rate.
    With no payments at all, the pure rows come back unchanged, with zeroed payment fields.
    '''

    if not pure_rows:
        return []

    if not payments:
        return [
            _recalculated(
                x,
                interest_pending_origin=x.accrued_interest_origin,
                interest_pending_brl=x.accrued_interest_brl_mtm,
                recalculated_balance_origin=x.closing_balance_origin,
                recalculated_balance_brl=x.closing_balance_brl_mtm,
                interest_delta_origin=-x.interest_origin,
                interest_delta_brl=-x.interest_brl_mtm,
                cash_vs_accrual_origin=-x.interest_origin,
                cash_vs_accrual_brl=-x.interest_brl_mtm
            ) for x in pure_rows
        ]

    basis = interest_config.day_count_basis
    base = _leg_base_rate(interest_config)
    out = []
    run = principal_origin
    unp = tot = _0
    prv = pure_rows[0].start_date

    for row, payment in _merge_events(pure_rows, payments):
        date = payment.payment_date if payment else row.date
        days = days_between(prv, date, basis) if date > prv else 0
        eff = periodic_rate(base, interest_config.compounding, basis, days)
        itr = _Q4(run * eff)
        opn = out[-1].recalculated_balance_origin if out else principal_origin
        amt = payment.amount_origin if payment else _0

        tot += itr
        unp += itr

        if payment:
            ipd = min(amt, unp)
            ppd = amt - ipd
            unp -= ipd
            run = max(_0, run - ppd)

        else:
            ipd = ppd = _0

            if interest_config.compounding == 'EXPONENTIAL' and unp > _0:
                run += unp
                unp = _0

        end = run + unp
        mtm = lambda x: _Q(x * row.fx_rate_mtm)
        ctr = lambda x: _Q(x * row.fx_rate_contract)

        out.append(_recalculated(
            row,
            start_date=prv,
            date=date,
            days=days,
            eff_rate=_Q8(eff),
            opening_balance_origin=opn,
            interest_origin=itr,
            closing_balance_origin=end,
            accrued_interest_origin=tot,
            opening_balance_brl_contract=ctr(opn),
            interest_brl_contract=ctr(itr),
            closing_balance_brl_contract=ctr(end),
            accrued_interest_brl_contract=ctr(tot),
            opening_balance_brl_mtm=mtm(opn),
            interest_brl_mtm=mtm(itr),
            closing_balance_brl_mtm=mtm(end),
            accrued_interest_brl_mtm=mtm(tot),
            fx_variation_principal=_Q(opn * (row.fx_rate_mtm - row.fx_rate_contract)),
            fx_variation_interest=_Q(itr * (row.fx_rate_mtm - row.fx_rate_contract)),
            fx_variation_total=_Q(end * row.fx_rate_mtm - end * row.fx_rate_contract),
            payment_id=payment.id if payment else None,
            is_payment=payment is not None,
            total_payment_origin=amt,
            total_payment_brl=mtm(amt),
            interest_paid_origin=ipd,
            interest_paid_brl=mtm(ipd),
            principal_paid_origin=ppd,
            principal_paid_brl=mtm(ppd),
            interest_pending_origin=unp,
            interest_pending_brl=mtm(unp),
            recalculated_balance_origin=run,
            recalculated_balance_brl=mtm(run),
            interest_delta_origin=ipd - itr,
            interest_delta_brl=mtm(ipd) - mtm(itr),
            interest_coverage_ratio=_Q4(ipd / itr) if itr > _0 else _0,
            amortization_effect_origin=ppd,
            amortization_effect_brl=mtm(ppd),
            cash_vs_accrual_origin=amt - itr,
            cash_vs_accrual_brl=mtm(amt) - mtm(itr)
        ))

        prv = date

    return out
# }}}

# Public API. Report projection. {{{
class AccrualField(enum.Enum):
    '''
    Columns of accrual reports.

    Each member carries its label, the decimal places it is shown with (None for non numeric fields), and how a
    summary row aggregates it: "sum", "last", "avg", or None.
    '''

    START_DATE = ('start_date', 'Start', None, None)
    DATE = ('date', 'Date', None, None)
    DAYS = ('days', 'Days', 0, 'sum')
    EFF_RATE = ('eff_rate', 'Eff. Rate', 8, 'avg')
    OPENING_BALANCE_ORIGIN = ('opening_balance_origin', 'Opening', 2, None)
    INTEREST_ORIGIN = ('interest_origin', 'Interest', 4, 'sum')
    CLOSING_BALANCE_ORIGIN = ('closing_balance_origin', 'Closing', 2, 'last')
    ACCRUED_INTEREST_ORIGIN = ('accrued_interest_origin', 'Accrued', 4, 'last')
    FX_RATE_CONTRACT = ('fx_rate_contract', 'FX Contract', 6, None)
    OPENING_BALANCE_BRL_CONTRACT = ('opening_balance_brl_contract', 'Opening BRL (Contract)', 2, None)
    INTEREST_BRL_CONTRACT = ('interest_brl_contract', 'Interest BRL (Contract)', 2, 'sum')
    CLOSING_BALANCE_BRL_CONTRACT = ('closing_balance_brl_contract', 'Closing BRL (Contract)', 2, 'last')
    ACCRUED_INTEREST_BRL_CONTRACT = ('accrued_interest_brl_contract', 'Accrued BRL (Contract)', 2, 'last')
    FX_RATE_MTM = ('fx_rate_mtm', 'FX MTM', 6, 'avg')
    FX_SOURCE_MTM = ('fx_source_mtm', 'FX Source', None, None)
    OPENING_BALANCE_BRL_MTM = ('opening_balance_brl_mtm', 'Opening BRL (MTM)', 2, None)
    INTEREST_BRL_MTM = ('interest_brl_mtm', 'Interest BRL (MTM)', 2, 'sum')
    CLOSING_BALANCE_BRL_MTM = ('closing_balance_brl_mtm', 'Closing BRL (MTM)', 2, 'last')
    ACCRUED_INTEREST_BRL_MTM = ('accrued_interest_brl_mtm', 'Accrued BRL (MTM)', 2, 'last')
    FX_VARIATION_PRINCIPAL = ('fx_variation_principal', 'FX Var. Principal', 2, 'last')
    FX_VARIATION_INTEREST = ('fx_variation_interest', 'FX Var. Interest', 2, 'last')
    FX_VARIATION_TOTAL = ('fx_variation_total', 'FX Var. Total', 2, 'last')
    FX_VARIATION_PERCENT = ('fx_variation_percent', 'FX Var. %', 4, 'last')
    IS_PAYMENT = ('is_payment', 'Payment?', None, None)
    TOTAL_PAYMENT_ORIGIN = ('total_payment_origin', 'Paid', 2, 'sum')
    TOTAL_PAYMENT_BRL = ('total_payment_brl', 'Paid BRL', 2, 'sum')
    INTEREST_PAID_ORIGIN = ('interest_paid_origin', 'Interest Paid', 2, 'sum')
    INTEREST_PAID_BRL = ('interest_paid_brl', 'Interest Paid BRL', 2, 'sum')
    PRINCIPAL_PAID_ORIGIN = ('principal_paid_origin', 'Principal Paid', 2, 'sum')
    PRINCIPAL_PAID_BRL = ('principal_paid_brl', 'Principal Paid BRL', 2, 'sum')
    INTEREST_PENDING_ORIGIN = ('interest_pending_origin', 'Pending', 2, 'last')
    INTEREST_PENDING_BRL = ('interest_pending_brl', 'Pending BRL', 2, 'last')
    RECALCULATED_BALANCE_ORIGIN = ('recalculated_balance_origin', 'Balance', 2, 'last')
    RECALCULATED_BALANCE_BRL = ('recalculated_balance_brl', 'Balance BRL', 2, 'last')
    INTEREST_DELTA_ORIGIN = ('interest_delta_origin', 'Interest Delta', 2, 'sum')
    INTEREST_COVERAGE_RATIO = ('interest_coverage_ratio', 'Coverage', 4, 'avg')
    AMORTIZATION_EFFECT_ORIGIN = ('amortization_effect_origin', 'Amortization', 2, 'sum')
    CASH_VS_ACCRUAL_ORIGIN = ('cash_vs_accrual_origin', 'Cash vs Accrual', 2, 'sum')

    def __init__(self, attr: str, label: str, decimals: t.Optional[int], summary: t.Optional[str]):
        self.label = label

        self.decimals = decimals

        self.summary = summary

        self.get = operator.attrgetter(attr)

    def show(self, row: AccrualRow) -> t.Any:
        val = self.get(row)

        if isinstance(val, decimal.Decimal) and self.decimals is not None:
            return val.quantize(decimal.Decimal(1).scaleb(-self.decimals), rounding=decimal.ROUND_HALF_UP)

        return val

# Interest accrual, in the origin currency and at both rates.
INTEREST_ANALYSIS = (
    AccrualField.DATE,
    AccrualField.DAYS,
    AccrualField.EFF_RATE,
    AccrualField.INTEREST_ORIGIN,
    AccrualField.ACCRUED_INTEREST_ORIGIN,
    AccrualField.INTEREST_BRL_CONTRACT,
    AccrualField.INTEREST_BRL_MTM,
    AccrualField.ACCRUED_INTEREST_BRL_MTM
)

# Principal and its FX variation.
PRINCIPAL_ANALYSIS = (
    AccrualField.DATE,
    AccrualField.OPENING_BALANCE_ORIGIN,
    AccrualField.FX_RATE_CONTRACT,
    AccrualField.FX_RATE_MTM,
    AccrualField.OPENING_BALANCE_BRL_CONTRACT,
    AccrualField.OPENING_BALANCE_BRL_MTM,
    AccrualField.FX_VARIATION_PRINCIPAL,
    AccrualField.FX_VARIATION_PERCENT
)

# Everything in one sheet.
CONSOLIDATED = (
    AccrualField.DATE,
    AccrualField.DAYS,
    AccrualField.OPENING_BALANCE_ORIGIN,
    AccrualField.INTEREST_ORIGIN,
    AccrualField.CLOSING_BALANCE_ORIGIN,
    AccrualField.FX_RATE_MTM,
    AccrualField.FX_SOURCE_MTM,
    AccrualField.CLOSING_BALANCE_BRL_CONTRACT,
    AccrualField.CLOSING_BALANCE_BRL_MTM,
    AccrualField.FX_VARIATION_TOTAL
)

# Cash out of payments.
CASH_FLOW = (
    AccrualField.DATE,
    AccrualField.IS_PAYMENT,
    AccrualField.TOTAL_PAYMENT_ORIGIN,
    AccrualField.TOTAL_PAYMENT_BRL,
    AccrualField.INTEREST_PAID_ORIGIN,
    AccrualField.PRINCIPAL_PAID_ORIGIN,
    AccrualField.RECALCULATED_BALANCE_ORIGIN
)

# Accrual against payments.
PAYMENT_RECONCILIATION = (
    AccrualField.DATE,
    AccrualField.DAYS,
    AccrualField.IS_PAYMENT,
    AccrualField.INTEREST_ORIGIN,
    AccrualField.INTEREST_PAID_ORIGIN,
    AccrualField.INTEREST_PENDING_ORIGIN,
    AccrualField.PRINCIPAL_PAID_ORIGIN,
    AccrualField.RECALCULATED_BALANCE_ORIGIN,
    AccrualField.INTEREST_COVERAGE_RATIO,
    AccrualField.CASH_VS_ACCRUAL_ORIGIN
)

def project(rows: t.Sequence[AccrualRow], fields: t.Sequence[AccrualField]) -> types.SimpleNamespace:
    '''
    Projects rows into a table: headers, one list of values per row, and a summary row.

    Summary cells are None for fields without an aggregation.
    '''

    summary = []

    for fld in fields:
        val = [fld.get(x) for x in rows]

        if not val or fld.summary is None:
            summary.append(None)

        elif fld.summary == 'sum':
            summary.append(sum(val, _0))

        elif fld.summary == 'last':
            summary.append(val[-1])

        else:
            summary.append(sum(val, _0) / len(val))

    return types.SimpleNamespace(
        headers=[x.label for x in fields],
        rows=[[f.show(x) for f in fields] for x in rows],
        summary=[v.quantize(decimal.Decimal(1).scaleb(-f.decimals), rounding=decimal.ROUND_HALF_UP) if isinstance(v, decimal.Decimal) else v for f, v in zip(fields, summary)]
    )
# }}}

# Public API. Loan book. {{{
class LoanBook:
    '''
    Contracts, their ledgers and their payments, for one session.

    Writes to a contract, payments and accruals, are serialised by a lock per contract. Every rate a write needs is
    resolved before anything is written, so a failed or cancelled write leaves no trace. Reads work on ledger
    snapshots and never wait on the locks.
    '''

    def __init__(self, gateway: FxGateway, *, fx_timeout: float = FX_TIMEOUT, today: t.Optional[t.Callable[[], datetime.date]] = None):
        self.gateway = gateway

        self.ledger = LedgerStore()

        self.payments = PaymentEngine(gateway, self.ledger, fx_timeout=fx_timeout)

        self.scheduler = AccrualScheduler(self.payments)

        self.today = today or datetime.date.today

        self._contracts: dict[str, Contract] = {}

        self._locks: collections.defaultdict[str, asyncio.Lock] = collections.defaultdict(asyncio.Lock)

    def _validate(self, contract: Contract) -> None:
        if problems := validate_contract_state(contract, self.today()):
            raise InvalidContractState(problems)

    async def _next_payment(self, contract: Contract, after: datetime.date) -> t.Tuple[t.Optional[datetime.date], t.Optional[decimal.Decimal]]:
        if contract.payment_flow.type != 'SCHEDULED' or contract.payment_flow.scheduled is None:
            return None, None

        for row in await self.scheduler.build_schedule_rows(contract):
            if row.date > after:
                return row.date, row.payment

        return None, None

    @typeguard.typechecked
    async def create_contract(
        self,
        *,
        counterparty: str,
        currency: str,
        principal: decimal.Decimal,
        start_date: _DATE,
        maturity_date: _DATE,
        interest_config: InterestConfig,
        direction: str = 'BORROWED',
        payment_flow: t.Optional[PaymentFlow] = None,
        contract_fx_rate: t.Optional[decimal.Decimal] = None,
        contract_fx_date: t.Optional[_DATE] = None,
        contract_id: t.Optional[str] = None,
        notes: t.Optional[str] = None
    ) -> Contract:
        '''
        Creates an ACTIVE contract and writes its CONTRACT_CREATION ledger entry.

        The BRL principal uses the rate of the start date, the contract rate being the last resort.
        '''

        ini = _parse_date(start_date)
        end = _parse_date(maturity_date)
        flow = payment_flow or PaymentFlow()
        ccy = currency.upper()
        problems = []

        if not counterparty.strip():
            problems.append('the counterparty is required')

        if direction not in ('BORROWED', 'LENT'):
            problems.append(f'unsupported direction "{direction}"')

        if not re.fullmatch(r'[A-Z]{3}', ccy):
            problems.append(f'invalid currency "{currency}"')

        if principal <= _0:
            problems.append('the principal must be positive')

        if ini >= end:
            problems.append(f'start date {ini} must precede maturity date {end}')

        if contract_fx_rate is not None and contract_fx_rate <= _0:
            problems.append('the contract rate must be positive')

        for i, leg in enumerate(interest_config.legs, 1):
            if leg.indexer == 'FX_INDEXED' and not (leg.ptax_currency or ccy != 'BRL'):
                problems.append(f'leg {i} is FX indexed but has no currency to follow')

        problems += validate_interest_config(interest_config)
        problems += validate_payment_flow(flow)

        if problems:
            raise InvalidContractState(problems)

        fxr = await self.payments.require_rate(ini, ccy, contract_fx_rate)
        now = _now()

        contract = Contract(
            id=contract_id or _new_id('LOAN', ini),
            direction=direction,
            counterparty=counterparty.strip(),
            currency=ccy,
            principal_origin=principal,
            principal_brl=_Q(principal * fxr.rate),
            start_date=ini,
            maturity_date=end,
            interest_config=interest_config,
            payment_flow=flow,
            status='ACTIVE',
            contract_fx_rate=contract_fx_rate,
            contract_fx_date=_parse_date(contract_fx_date) if contract_fx_date else None,
            created_at=now,
            updated_at=now,
            notes=notes
        )

        if contract.id in self._contracts:
            raise InvalidContractState([f'contract {contract.id} already exists'])

        nxt_date, nxt_amount = await self._next_payment(contract, ini)

        contract.current_balance = BalanceSnapshot(
            balance_origin=principal,
            balance_brl=contract.principal_brl,
            last_update_date=ini,
            next_payment_date=nxt_date,
            next_payment_amount=nxt_amount
        )

        self._validate(contract)

        self._contracts[contract.id] = contract

        self.payments.register_initial_entry(contract, _Q6(fxr.rate), fxr.source)

        _LOG.info(f'contract {contract.id} created: {principal} {ccy}, {contract.principal_brl} BRL')

        return contract

    def get_contract(self, contract_id: str) -> Contract:
        try:
            return self._contracts[contract_id]

        except KeyError:
            raise InvalidContractState([f'unknown contract {contract_id}']) from None

    def contracts(self) -> t.Tuple[Contract, ...]:
        return tuple(self._contracts.values())

    @typeguard.typechecked
    async def apply_payment(
        self,
        contract_id: str,
        amount: decimal.Decimal,
        payment_date: _DATE,
        currency: t.Optional[str] = None,
        description: t.Optional[str] = None
    ) -> types.SimpleNamespace:
        '''
        Applies a payment to a contract. Returns the payment, the new balance and the ledger entry.

        The contract is settled when its BRL balance falls to a cent or less.
        '''

        contract = self.get_contract(contract_id)
        day = _parse_date(payment_date)

        async with self._locks[contract_id]:
            if problems := validate_payment(contract, amount, day):
                raise InvalidContractState(problems)

            out = await self.payments.prepare_payment(contract, amount, day, currency, description)
            nxt_date, nxt_amount = await self._next_payment(contract, day)
            new = dataclasses.replace(out.new_balance, next_payment_date=nxt_date, next_payment_amount=nxt_amount)

            self._validate(dataclasses.replace(contract, current_balance=new))

            out.new_balance = new
            out.ledger_entry = self.payments.commit_payment(contract, out.payment, new)

            contract.current_balance = new
            contract.updated_at = _now()

            if new.balance_brl <= SETTLEMENT_TOLERANCE:
                contract.status = 'SETTLED'

                _LOG.info(f'contract {contract_id} settled on {day}')

        return out

    @typeguard.typechecked
    async def record_accrual(self, contract_id: str, until_date: _DATE) -> types.SimpleNamespace:
        '''
        Accrues interest on a contract's balance, from its last update up to "until_date", and writes an ACCRUAL
        ledger entry. The balance after the entry is unchanged; the interest goes to the accrued interest fields.
        '''

        contract = self.get_contract(contract_id)
        day = _parse_date(until_date)

        async with self._locks[contract_id]:
            snap = contract.current_balance

            if day <= snap.last_update_date:
                raise InvalidContractState([f'accrual date {day} must follow the last update {snap.last_update_date}'])

            days = days_between(snap.last_update_date, day, contract.interest_config.day_count_basis)
            rate = await self.scheduler.effective_rate(contract, snap.last_update_date, day, days)
            fxr = await self.payments.require_rate(day, contract.currency, contract.contract_fx_rate)
            itr = _Q(snap.balance_origin * rate)
            itr_brl = _Q(itr * fxr.rate)

            new = dataclasses.replace(
                snap,
                accrued_interest_origin=snap.accrued_interest_origin + itr,
                accrued_interest_brl=snap.accrued_interest_brl + itr_brl,
                last_update_date=day
            )

            self._validate(dataclasses.replace(contract, current_balance=new))

            entry = LedgerEntry(
                id=_new_id('LED', day),
                contract_id=contract_id,
                entry_date=day,
                type='ACCRUAL',
                amount_origin=itr,
                amount_brl=itr_brl,
                fx_rate=_Q6(fxr.rate),
                fx_source=fxr.source,
                balance_after_origin=new.balance_origin,
                balance_after_brl=new.balance_brl,
                description=f'Interest accrued over {days} days',
                created_at=_now()
            )

            self.ledger.append(entry)

            contract.current_balance = new
            contract.updated_at = _now()

        return types.SimpleNamespace(ledger_entry=entry, new_balance=new)

    @typeguard.typechecked
    def get_balance_at_date(self, contract_id: str, target_date: _DATE) -> types.SimpleNamespace:
        return self.payments.get_balance_at_date(self.get_contract(contract_id), target_date)

    @typeguard.typechecked
    async def build_accrual_rows(self, contract_id: str, start_date: _DATE, end_date: _DATE, frequency: str = 'DAILY', *, from_ledger: bool = False) -> list[AccrualRow]:
        return await self.scheduler.build_accrual_rows(self.get_contract(contract_id), start_date, end_date, frequency, from_ledger=from_ledger)

    @typeguard.typechecked
    async def build_schedule_rows(self, contract_id: str) -> list[ScheduleRow]:
        return await self.scheduler.build_schedule_rows(self.get_contract(contract_id))

    @typeguard.typechecked
    async def build_recalculated_rows(self, contract_id: str, start_date: _DATE, end_date: _DATE, frequency: str = 'DAILY') -> list[RecalculatedAccrualRow]:
        contract = self.get_contract(contract_id)
        rows = await self.scheduler.build_accrual_rows(contract, start_date, end_date, frequency)

        return recalculate(rows, self.payments.get_payment_history(contract_id), contract.interest_config, contract.principal_origin)

    @typeguard.typechecked
    async def sync_rates(self, start_date: _DATE, end_date: _DATE) -> bool:
        '''
        Asks the gateway to refresh the rates of every foreign currency in the book. Failures are logged, not raised.
        '''

        ccy = sorted({x.currency for x in self._contracts.values() if x.currency != 'BRL'})

        if not ccy:
            return True

        try:
            await asyncio.wait_for(self.gateway.sync_ptax(_parse_date(start_date), _parse_date(end_date), ccy), self.payments.fx_timeout)

        except (asyncio.TimeoutError, OSError, LoanCoreError) as exc:
            _LOG.warning(f'rate synchronisation of {", ".join(ccy)} failed: {exc!r}')

            return False

        return True

    def dump(self) -> dict[str, t.Any]:
        return {
            'contracts': [to_record(x) for x in self._contracts.values()],
            'ledger': self.ledger.dump(),
            'payments': self.payments.dump()
        }

    def load(self, data: dict[str, t.Any]) -> None:
        self._contracts = {x['id']: from_record(Contract, x) for x in data.get('contracts', [])}

        self.ledger.load(data.get('ledger', {}))

        self.payments.load(data.get('payments', {}))

        _LOG.info(f'{len(self._contracts)} contracts loaded')
# }}}

if __name__ == '__main__':
    import doctest

    doctest.testmod()

# vi:fdm=marker:
