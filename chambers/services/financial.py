"""
Financial aggregation over already-fetched rows.

Nothing in here touches the session. Every amount is computed in Decimal and
rounded to cents (ROUND_HALF_UP) at the point it is produced, so callers can
store the results straight into Numeric(12, 2) columns.
"""

from decimal import Decimal, ROUND_HALF_UP

from chambers.utils.date_utils import add_frequency, parse_iso_datetime

CENT = Decimal('0.01')
ZERO = Decimal('0')
HUNDRED = Decimal('100')

INVOICED_STATUSES = ('SUBMITTED', 'APPROVED', 'PAID')


def to_decimal(value):
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    # str() keeps float inputs like 0.1 from dragging binary noise along
    return Decimal(str(value))

def money(value):
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


# ---- unbilled work ----------------------------------------------------------

def unbilled_timesheet_amount(entries):
    total = ZERO
    for entry in entries:
        if entry.billed or not entry.billable:
            continue
        total += to_decimal(entry.hours) * to_decimal(entry.rate)
    return money(total)

def unbilled_charges_amount(charges):
    return money(sum((to_decimal(c.amount) for c in charges if not c.billed), ZERO))

def unbilled_amount(project):
    """Billable timesheet hours at their rate plus charges, counting only what no invoice has picked up"""
    return money(
        unbilled_timesheet_amount(project.timesheet_entries)
        + unbilled_charges_amount(project.charges)
    )


# ---- outstanding invoices ---------------------------------------------------

def is_outstanding(bill, now):
    if bill.status == 'PAID':
        return False
    if bill.due_date is None:
        return False
    return bill.due_date < now

def reminder_due(bill, now, interval_days=7):
    """
    'first' when the bill has never been flagged, 'repeat' when the last reminder
    is at least interval_days old, otherwise None.
    """
    if bill.became_outstanding_at is None:
        return 'first'
    if bill.last_reminder_sent_at is None:
        return 'repeat'
    if (now - bill.last_reminder_sent_at).total_seconds() >= interval_days * 86400:
        return 'repeat'
    return None


# ---- payment terms and installments ----------------------------------------

def upfront_deduction(base_amount, upfront_type, upfront_value):
    base = to_decimal(base_amount)
    if not upfront_type or upfront_value is None:
        return ZERO
    if upfront_type == 'PERCENT':
        return money(base * to_decimal(upfront_value) / HUNDRED)
    return money(upfront_value)

def installment_amount(base_amount, installment_count, upfront_type=None, upfront_value=None):
    """(base - upfront) split evenly over the installments"""
    if not installment_count:
        return ZERO
    remaining = to_decimal(base_amount) - upfront_deduction(base_amount, upfront_type, upfront_value)
    return money(remaining / Decimal(installment_count))

def installment_dates(payment_term, issue_date, milestones=None):
    """
    Due dates for each installment, in order.

    Explicit maturity dates win; otherwise time based terms step the frequency
    from the issue date and milestone based terms take the milestones' due dates.
    """
    explicit = [parse_iso_datetime(d) for d in (payment_term.installment_maturity_dates or []) if d]
    if explicit:
        return explicit

    count = payment_term.installment_count or 0
    if payment_term.installment_type == 'TIME_BASED' and payment_term.installment_frequency and issue_date:
        return [add_frequency(issue_date, payment_term.installment_frequency, n) for n in range(1, count + 1)]

    if payment_term.installment_type == 'MILESTONE_BASED' and milestones:
        wanted = {str(m) for m in (payment_term.milestone_ids or [])}
        dated = [
            m.due_date for m in milestones
            if m.due_date is not None and (not wanted or str(m.id) in wanted)
        ]
        return sorted(dated)

    return []


# ---- proposals --------------------------------------------------------------

def invoiced_amount(bills):
    return money(sum(
        (to_decimal(b.amount) for b in bills
         if b.status in INVOICED_STATUSES and b.deleted_at is None),
        ZERO,
    ))

def proposal_uncharged(proposal):
    amount = to_decimal(proposal.amount)
    projects = [p for p in proposal.projects if p.deleted_at is None]
    if not projects:
        return money(amount)
    invoiced = sum((invoiced_amount(p.bills) for p in projects), ZERO)
    difference = amount - invoiced
    return money(difference) if difference > 0 else ZERO

def closed_proposals_not_charged(proposals):
    """Approved proposal value not yet covered by submitted, approved or paid invoices"""
    total = ZERO
    for proposal in proposals:
        if proposal.status != 'APPROVED' or proposal.deleted_at is not None:
            continue
        total += proposal_uncharged(proposal)
    return money(total)


# ---- invoice generation -----------------------------------------------------

def discount_value(amount, discount_percent=None, discount_amount=None):
    amount = to_decimal(amount)
    if discount_percent:
        return money(amount * to_decimal(discount_percent) / HUNDRED)
    if discount_amount:
        return money(min(to_decimal(discount_amount), amount))
    return ZERO

def tax_value(amount, tax_rate=None, tax_inclusive=False):
    """Inclusive: the tax portion already inside amount. Exclusive: tax added on top."""
    if not tax_rate:
        return ZERO
    amount = to_decimal(amount)
    rate = to_decimal(tax_rate)
    if tax_inclusive:
        return money(amount * rate / (HUNDRED + rate))
    return money(amount * rate / HUNDRED)

def invoice_totals(subtotal, credit=ZERO, discount_percent=None, discount_amount=None,
                   tax_rate=None, tax_inclusive=False):
    subtotal = money(subtotal)
    credit = money(min(to_decimal(credit), subtotal)) if subtotal > 0 else ZERO
    after_credit = subtotal - credit
    discount = discount_value(after_credit, discount_percent, discount_amount)
    taxable = after_credit - discount
    tax = tax_value(taxable, tax_rate, tax_inclusive)
    total = taxable if tax_inclusive else taxable + tax
    return {
        'subtotal': subtotal,
        'credit': credit,
        'discount': discount,
        'tax': tax,
        'total': money(total),
    }

def available_upfront_credit(bills):
    """Paid upfront invoices that have not already been credited against another invoice"""
    return money(sum(
        (to_decimal(b.amount) - to_decimal(b.credit_applied)
         for b in bills
         if b.is_upfront_payment and b.status == 'PAID' and b.deleted_at is None),
        ZERO,
    ))


# ---- finder fees ------------------------------------------------------------

def invoice_net_amount(bill):
    """Subtotal less discount and credit items, before tax; never negative"""
    subtotal = to_decimal(bill.subtotal)
    if not subtotal:
        subtotal = sum((to_decimal(i.amount) for i in bill.items if not i.is_credit), ZERO)
    credits = sum((abs(to_decimal(i.amount)) for i in bill.items if i.is_credit), ZERO)
    discount = discount_value(subtotal, bill.discount_percent, bill.discount_amount)
    net = subtotal - discount - credits
    return money(net) if net > 0 else ZERO

def finder_fee_amount(net_amount, percent):
    return money(to_decimal(net_amount) * to_decimal(percent) / HUNDRED)


# ---- staff compensation -----------------------------------------------------

def salary_bonus(base_salary, multiplier, max_multiplier=None):
    multiplier = to_decimal(multiplier)
    if max_multiplier is not None and multiplier > to_decimal(max_multiplier):
        raise ValueError(f"Bonus multiplier cannot exceed {max_multiplier}")
    return money(to_decimal(base_salary) * multiplier)

def percentage_earnings(project_total, project_percentage, direct_work_total, direct_work_percentage,
                        percentage_type='BOTH'):
    earned = ZERO
    if percentage_type in ('PROJECT_TOTAL', 'BOTH') and project_percentage:
        earned += to_decimal(project_total) * to_decimal(project_percentage) / HUNDRED
    if percentage_type in ('DIRECT_WORK', 'BOTH') and direct_work_percentage:
        earned += to_decimal(direct_work_total) * to_decimal(direct_work_percentage) / HUNDRED
    return money(earned)

def balance(transactions):
    return money(sum((to_decimal(t.amount) for t in transactions), ZERO))

def next_recurring_date(last_date, start_date, frequency):
    if last_date is None:
        return start_date
    return add_frequency(last_date, frequency)

