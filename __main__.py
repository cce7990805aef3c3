#!/usr/bin/env python3
#
# Copyright (C) Inco - All Rights Reserved.
#
# Unauthorized copying of this file, via any medium, is strictly prohibited. Proprietary and confidential.
#

'''Loancore CLI.'''

# Python.
import csv
import sys
import json
import asyncio
import decimal
import logging
import argparse
import datetime
import functools

# Libs.
import tabulate

# Loancore.
import loancore

# Print helper.
_PR = functools.partial(print, file=sys.stderr, flush=True)

# Formats handled here, besides the ones of "tabulate".
_OWN_FORMATS = ('json', 'csv', 'raw')

# Options for amortization tables.
_SCHEDULE_OPTS = {
    'headers': ['Nº', 'Date', 'Opening', 'Payment', 'Interest', 'Principal', 'Closing', 'Rate'],
    'colalign': ('right', 'center', 'right', 'right', 'right', 'right', 'right', 'right')
}

def _date(value):
    try:
        return loancore._parse_date(value)

    except loancore.InvalidDate as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None

def _payment(value):
    '''Parses "DATE:AMOUNT".'''

    date, _, amount = value.partition(':')

    try:
        return _date(date), decimal.Decimal(amount)

    except decimal.InvalidOperation:
        raise argparse.ArgumentTypeError(f'invalid payment "{value}", expected DATE:AMOUNT') from None

def _emit(rows, fields, fmt):
    if fmt == 'json':
        print(json.dumps([loancore.to_record(x) for x in rows], indent=2))

    elif fmt == 'csv':
        dev = csv.DictWriter(sys.stdout, list(loancore.to_record(rows[0]).keys()) if rows else [])

        dev.writeheader()
        dev.writerows(loancore.to_record(x) for x in rows)

    elif fmt == 'raw':
        for x in rows:
            print(x)

    else:
        tab = loancore.project(rows, fields)

        _PR(tabulate.tabulate(tab.rows + [tab.summary], headers=tab.headers, tablefmt=fmt, disable_numparse=True))

async def _book(args):
    gateway = loancore.InMemoryFxGateway()
    end = getattr(args, 'end', args.start)
    book = loancore.LoanBook(gateway, today=lambda: max(end, datetime.date.today()))

    if args.currency != 'BRL':
        if args.fx is None:
            raise loancore.FxUnavailable(args.currency, args.start)

        gateway.add_rate(args.currency, args.start, args.fx)

    leg = loancore.InterestLeg(indexer='FIXED', spread_annual=args.rate)
    cfg = loancore.InterestConfig(legs=[leg], day_count_basis=args.basis, compounding=args.compounding)

    contract = await book.create_contract(
        counterparty='CLI',
        currency=args.currency,
        principal=args.principal,
        start_date=args.start,
        maturity_date=end + datetime.timedelta(days=1),
        interest_config=cfg,
        contract_fx_rate=args.fx if args.currency != 'BRL' else None
    )

    return book, contract

def days(args):
    '''Counts the days between two dates under a day count basis.'''

    n = loancore.days_between(args.start, args.end, args.basis)
    r = loancore.periodic_rate(args.rate, args.compounding, args.basis, n) if args.rate is not None else None

    print(n if r is None else f'{n}\t{loancore._Q8(r)}')

def rate(args):
    '''Converts an annual rate, in percent, into the rate of a period of some days.'''

    print(loancore._Q8(loancore.periodic_rate(args.rate, args.compounding, args.basis, args.days)))

def schedule(args):
    '''Prints a PRICE or SAC amortization table, for a periodic rate in percent.'''

    rate = args.rate / 100
    dates = [loancore.add_period(args.start, i, args.periodicity) for i in range(1, args.installments + 1)]
    rows = list(loancore.amortize(args.principal, rate, args.installments, args.system, dates))

    if args.format in _OWN_FORMATS:
        _emit(rows, (), args.format)

        return

    data = [[x.no, x.date.isoformat(), x.opening_balance, x.payment, x.interest, x.principal, x.closing_balance, x.eff_rate] for x in rows]

    _PR(tabulate.tabulate(data, tablefmt=args.format, disable_numparse=True, **_SCHEDULE_OPTS))

def accrual(args):
    '''Prints the pure accrual table of a fixed rate contract.'''

    async def run():
        book, contract = await _book(args)

        return await book.build_accrual_rows(contract.id, args.start, args.end, args.frequency)

    _emit(asyncio.run(run()), loancore.CONSOLIDATED, args.format)

def recalculate(args):
    '''Prints the accrual table of a fixed rate contract, recalculated with payments in the origin currency.'''

    async def run():
        book, contract = await _book(args)
        rows = await book.build_accrual_rows(contract.id, args.start, args.end, args.frequency)
        pays = [loancore.Payment(id=f'CLI-{i}', contract_id=contract.id, payment_date=d, amount_origin=a) for i, (d, a) in enumerate(args.payment, 1)]

        return loancore.recalculate(rows, pays, contract.interest_config, contract.principal_origin)

    _emit(asyncio.run(run()), loancore.PAYMENT_RECONCILIATION, args.format)

def _parser():
    par = argparse.ArgumentParser(prog='loancore', description=__doc__)

    par.add_argument('--debug', action='store_true', help='log at the DEBUG level')
    par.add_argument('--format', default='simple', help=f'a tabulate format, or one of {", ".join(_OWN_FORMATS)}')

    sub = par.add_subparsers(dest='command', required=True)

    cmd = sub.add_parser('days', help=days.__doc__)
    cmd.add_argument('start', type=_date)
    cmd.add_argument('end', type=_date)
    cmd.add_argument('--basis', default='ACT/365')
    cmd.add_argument('--rate', type=decimal.Decimal, help='annual rate, in percent, to convert into a periodic rate')
    cmd.add_argument('--compounding', default='EXPONENTIAL', choices=('EXPONENTIAL', 'LINEAR'))
    cmd.set_defaults(func=days)

    cmd = sub.add_parser('rate', help=rate.__doc__)
    cmd.add_argument('rate', type=decimal.Decimal, help='annual rate, in percent')
    cmd.add_argument('days', type=int)
    cmd.add_argument('--basis', default='ACT/365', choices=('30/360', 'ACT/360', 'ACT/365', 'BUS/252'))
    cmd.add_argument('--compounding', default='EXPONENTIAL', choices=('EXPONENTIAL', 'LINEAR'))
    cmd.set_defaults(func=rate)

    cmd = sub.add_parser('schedule', help=schedule.__doc__)
    cmd.add_argument('principal', type=decimal.Decimal)
    cmd.add_argument('rate', type=decimal.Decimal)
    cmd.add_argument('installments', type=int)
    cmd.add_argument('--system', default='PRICE', choices=('PRICE', 'SAC'))
    cmd.add_argument('--start', type=_date, default=datetime.date.today())
    cmd.add_argument('--periodicity', default='MONTHLY', choices=('MONTHLY', 'QUARTERLY', 'SEMIANNUAL', 'ANNUAL'))
    cmd.set_defaults(func=schedule)

    for name, func in (('accrual', accrual), ('recalculate', recalculate)):
        cmd = sub.add_parser(name, help=func.__doc__)
        cmd.add_argument('principal', type=decimal.Decimal)
        cmd.add_argument('rate', type=decimal.Decimal, help='annual rate, in percent')
        cmd.add_argument('start', type=_date)
        cmd.add_argument('end', type=_date)
        cmd.add_argument('--frequency', default='MONTHLY', choices=('DAILY', 'MONTHLY', 'YEARLY'))
        cmd.add_argument('--basis', default='ACT/365', choices=('30/360', 'ACT/360', 'ACT/365', 'BUS/252'))
        cmd.add_argument('--compounding', default='EXPONENTIAL', choices=('EXPONENTIAL', 'LINEAR'))
        cmd.add_argument('--currency', default='BRL', type=str.upper)
        cmd.add_argument('--fx', type=decimal.Decimal, help='fixed contract rate to BRL, required for foreign currencies')
        cmd.set_defaults(func=func)

        if name == 'recalculate':
            cmd.add_argument('--payment', type=_payment, action='append', default=[], help='DATE:AMOUNT, in the origin currency')

    return par

args = _parser().parse_args()

if args.debug:
    logging.basicConfig(level=logging.DEBUG)

try:
    args.func(args)

except loancore.LoanCoreError as exc:
    _PR(f'Error, {exc}.')

    sys.exit(1)

# vi:fdm=marker:
