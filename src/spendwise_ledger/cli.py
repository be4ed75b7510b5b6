"""CLI for the SpendWise ledger using Typer."""

import logging
import sys
from datetime import date, datetime

import typer
from rich.console import Console
from rich.table import Table

from .config import Settings, load_settings
from .db import Database
from .exceptions import EntityNotFoundError
from .models import EqualSplit, RecurringInterval, Tag
from .money import Money, minor_unit_exponent
from .secret_box import FileKeyStore, KeySession, SecretBox
from .service import LedgerService

app = typer.Typer(
    name="spendwise-ledger",
    help="Track shared expenses, balances and settle-ups",
)

console = Console()


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def format_money(amount: Money, use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: (85.02 USD)
    Positive amounts have spaces:      85.02 USD
    """
    digits = minor_unit_exponent(amount.currency)
    magnitude = f"{abs(amount.to_major()):,.{digits}f}"
    if amount.minor_units < 0:
        if use_color:
            return f"([red]{magnitude}[/red] {amount.currency})"
        return f"({magnitude} {amount.currency})"
    if use_color:
        return f" [green]{magnitude}[/green] {amount.currency} "
    return f" {magnitude} {amount.currency} "


def _open_service(settings: Settings) -> tuple[LedgerService, Database]:
    """Open the database and unlock the device key for note encryption."""
    db = Database(settings.database_path)
    session = KeySession()
    session.initialize(FileKeyStore(settings.key_path).load_or_create())
    return LedgerService(settings, db, secret_box=SecretBox(session)), db


def _parse_amount(value: str, currency: str) -> Money:
    amount = Money.of(value, currency)
    if amount.minor_units <= 0:
        raise ValueError(f"Amount must be positive: {value}")
    return amount


def _fail(e: Exception, verbose: bool):
    console.print(f"\n[bold red]Error:[/bold red] {e}")
    if verbose:
        raise e
    sys.exit(1)


def _member_names(service: LedgerService, group_id: str) -> dict[str, str]:
    return {member.id: member.name for member in service.list_members(group_id)}


def _resolve_tag(service: LedgerService, ref: str) -> Tag:
    for tag in service.list_tags():
        if ref in (tag.id, tag.name):
            return tag
    raise EntityNotFoundError("tag", ref)


# ============================================================================
# Groups and members
# ============================================================================


@app.command("group-create")
def group_create(
    name: str = typer.Argument(..., help="Group name"),
    currency: str | None = typer.Option(None, "--currency", help="ISO 4217 currency code"),
    description: str | None = typer.Option(None, "--description", "-d", help="Description"),
    me: str | None = typer.Option(None, "--me", help="Add yourself as the first member"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create an expense group."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        group = service.create_group(
            name,
            currency_code=currency.upper() if currency else None,
            description=description,
            creator_name=me,
        )
        console.print(f"[green]✓ Created group {group.name}[/green] [dim]({group.id})[/dim]")
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


@app.command()
def groups(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List expense groups and their members."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        all_groups = service.list_groups()
        if not all_groups:
            console.print("[yellow]No groups yet.[/yellow]")
            return

        table = Table(title="Groups", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Currency", justify="center")
        table.add_column("Members")
        for group in all_groups:
            names = ", ".join(m.name for m in service.list_members(group.id))
            table.add_row(group.id, group.name, group.currency_code, names or "[dim]—[/dim]")
        console.print(table)
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


@app.command("member-add")
def member_add(
    group_id: str = typer.Argument(..., help="Group ID"),
    name: str = typer.Argument(..., help="Member name"),
    email: str | None = typer.Option(None, "--email", help="Member email"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Add a member to a group."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        member = service.add_member(group_id, name, email=email)
        console.print(f"[green]✓ Added {member.name}[/green] [dim]({member.id})[/dim]")
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


@app.command("member-remove")
def member_remove(
    member_id: str = typer.Argument(..., help="Member ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Remove a member that no expense or payment references."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        service.remove_member(member_id)
        console.print("[green]✓ Member removed[/green]")
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


# ============================================================================
# Expenses and payments
# ============================================================================


@app.command("expense-add")
def expense_add(
    amount: str = typer.Argument(..., help="Amount in major units, e.g. 12.50"),
    category: str = typer.Argument(..., help="Category"),
    group_id: str | None = typer.Option(None, "--group", "-g", help="Group ID"),
    paid_by: str | None = typer.Option(None, "--paid-by", help="Paying member ID"),
    currency: str | None = typer.Option(None, "--currency", help="Currency code"),
    description: str | None = typer.Option(None, "--description", "-d", help="Description"),
    note: str | None = typer.Option(None, "--note", help="Private note (stored encrypted)"),
    on: datetime | None = typer.Option(None, "--date", formats=["%Y-%m-%d"], help="Date"),
    split_equal: bool = typer.Option(
        False, "--split-equal", help="Split equally between all group members"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Record an expense, optionally splitting it equally across the group."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)

        if currency:
            code = currency.upper()
        elif group_id:
            code = db.require_group(group_id).currency_code
        else:
            code = settings.default_currency

        policy = None
        if split_equal:
            if not group_id:
                raise ValueError("--split-equal needs --group")
            policy = EqualSplit(member_ids=[m.id for m in service.list_members(group_id)])

        expense = service.add_expense(
            _parse_amount(amount, code),
            category,
            expense_date=on.date() if on else None,
            description=description,
            note=note,
            group_id=group_id,
            paid_by_member_id=paid_by,
            split=policy,
        )
        console.print(
            f"[green]✓ Recorded {format_money(expense.amount)}[/green] [dim]({expense.id})[/dim]"
        )
        if policy is not None:
            names = _member_names(service, group_id)
            for split in service.get_splits(expense.id):
                console.print(f"  {names[split.member_id]}: {format_money(split.amount)}")
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


@app.command()
def expenses(
    group_id: str | None = typer.Option(None, "--group", "-g", help="Only this group"),
    personal: bool = typer.Option(False, "--personal", help="Only personal expenses"),
    tag: str | None = typer.Option(None, "--tag", "-t", help="Only expenses with this tag"),
    show_notes: bool = typer.Option(False, "--notes", help="Decrypt and show notes"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List expenses, newest first."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        tag_id = _resolve_tag(service, tag).id if tag else None
        rows = service.list_expenses(group_id=group_id, personal_only=personal, tag_id=tag_id)
        if not rows:
            console.print("[yellow]No expenses found.[/yellow]")
            return

        table = Table(title="Expenses", show_header=True, header_style="bold magenta")
        table.add_column("Date")
        table.add_column("Category", style="yellow")
        table.add_column("Description", style="cyan")
        table.add_column("Amount", justify="right")
        if show_notes:
            table.add_column("Note", style="dim")
        table.add_column("ID", style="dim")

        for expense in rows:
            row = [
                expense.date.isoformat(),
                expense.category,
                expense.description or "",
                format_money(expense.amount),
            ]
            if show_notes:
                row.append(service.read_note(expense) or "")
            row.append(expense.id)
            table.add_row(*row)
        console.print(table)
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


@app.command()
def pay(
    group_id: str = typer.Argument(..., help="Group ID"),
    from_member: str = typer.Argument(..., help="Paying member ID"),
    to_member: str = typer.Argument(..., help="Receiving member ID"),
    amount: str = typer.Argument(..., help="Amount in major units"),
    note: str | None = typer.Option(None, "--note", help="Payment note"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Record a payment between two group members."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        group = db.require_group(group_id)
        payment = service.record_payment(
            group_id, from_member, to_member, _parse_amount(amount, group.currency_code), note=note
        )
        console.print(f"[green]✓ Recorded payment of {format_money(payment.amount)}[/green]")
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


# ============================================================================
# Balances and settle-up
# ============================================================================


@app.command()
def balances(
    group_id: str = typer.Argument(..., help="Group ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show each member's net balance (positive = is owed money)."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        names = _member_names(service, group_id)
        result = service.get_balances(group_id)

        table = Table(title="Balances", show_header=True, header_style="bold magenta")
        table.add_column("Member", style="cyan")
        table.add_column("Balance", justify="right")
        for member_id, balance in result.items():
            table.add_row(names[member_id], format_money(balance))
        console.print(table)
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


@app.command()
def settle(
    group_id: str = typer.Argument(..., help="Group ID"),
    apply: bool = typer.Option(False, "--apply", help="Record the suggested payments"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Suggest (and optionally record) the transfers that settle a group."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        names = _member_names(service, group_id)
        suggestions = service.get_settlement_suggestions(group_id)
        if not suggestions:
            console.print("[green]✓ Everyone is settled up.[/green]")
            return

        table = Table(title="Settle Up", show_header=True, header_style="bold magenta")
        table.add_column("From", style="cyan")
        table.add_column("To", style="cyan")
        table.add_column("Amount", justify="right")
        for suggestion in suggestions:
            table.add_row(
                names[suggestion.from_member_id],
                names[suggestion.to_member_id],
                format_money(suggestion.amount),
            )
        console.print(table)

        if not apply:
            console.print(
                f"\n[bold]To record these payments, run:[/bold]\n"
                f"  [cyan]spendwise-ledger settle {group_id} --apply[/cyan]\n"
            )
            return

        if not yes and not typer.confirm("Record these payments?"):
            console.print("[yellow]Cancelled.[/yellow]")
            return

        payments = service.settle_up(group_id)
        console.print(f"[bold green]✓ Recorded {len(payments)} payments[/bold green]")
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


# ============================================================================
# Recurring expenses
# ============================================================================


@app.command("recurring-add")
def recurring_add(
    amount: str = typer.Argument(..., help="Amount in major units"),
    category: str = typer.Argument(..., help="Category"),
    interval: str = typer.Option("monthly", "--interval", help="daily, weekly, monthly or custom"),
    every: int = typer.Option(1, "--every", help="Interval multiplier (days for custom)"),
    start: datetime = typer.Option(..., "--start", formats=["%Y-%m-%d"], help="Start date"),
    end: datetime | None = typer.Option(None, "--end", formats=["%Y-%m-%d"], help="End date"),
    group_id: str | None = typer.Option(None, "--group", "-g", help="Group ID"),
    paid_by: str | None = typer.Option(None, "--paid-by", help="Paying member ID"),
    currency: str | None = typer.Option(None, "--currency", help="Currency code"),
    description: str | None = typer.Option(None, "--description", "-d", help="Description"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create a recurring expense rule."""
    setup_logging(verbose)
    db = None
    try:
        if interval not in ("daily", "weekly", "monthly", "custom"):
            raise ValueError(f"Unknown interval: {interval}")
        recurring_interval: RecurringInterval = interval  # type: ignore[assignment]

        settings = load_settings()
        service, db = _open_service(settings)
        if currency:
            code = currency.upper()
        elif group_id:
            code = db.require_group(group_id).currency_code
        else:
            code = settings.default_currency

        rule = service.create_recurring_rule(
            _parse_amount(amount, code),
            category,
            recurring_interval,
            start.date(),
            interval_value=every,
            end_date=end.date() if end else None,
            description=description,
            group_id=group_id,
            paid_by_member_id=paid_by,
        )
        console.print(f"[green]✓ Created recurring rule[/green] [dim]({rule.id})[/dim]")
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


@app.command("recurring-run")
def recurring_run(
    on: datetime | None = typer.Option(
        None, "--date", formats=["%Y-%m-%d"], help="Generate as of this date"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Generate recurring expenses that fell due since the last run."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        as_of: date | None = on.date() if on else None
        generated = service.generate_recurring(as_of)
        if not generated:
            console.print("[dim]Nothing due.[/dim]")
            return
        for expense in generated:
            console.print(
                f"  {expense.date.isoformat()}  {expense.category}  {format_money(expense.amount)}"
            )
        console.print(f"[green]✓ Generated {len(generated)} expenses[/green]")
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


# ============================================================================
# Tags
# ============================================================================


@app.command("tag-create")
def tag_create(
    name: str = typer.Argument(..., help="Tag name"),
    color: str | None = typer.Option(None, "--color", help="Hex color, e.g. #3B82F6"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create a tag."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        tag = service.create_tag(name, color=color)
        console.print(f"[green]✓ Created tag {tag.name}[/green] [dim]({tag.id})[/dim]")
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


@app.command()
def tags(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List tags."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        all_tags = service.list_tags()
        if not all_tags:
            console.print("[yellow]No tags yet.[/yellow]")
            return

        table = Table(title="Tags", show_header=True, header_style="bold magenta")
        table.add_column("Name", style="cyan")
        table.add_column("Color")
        table.add_column("ID", style="dim")
        for tag in all_tags:
            table.add_row(tag.name, f"[{tag.color}]■[/] {tag.color}", tag.id)
        console.print(table)
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


@app.command("tag-add")
def tag_add(
    expense_id: str = typer.Argument(..., help="Expense ID"),
    tag: str = typer.Argument(..., help="Tag name or ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Attach a tag to an expense."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        found = _resolve_tag(service, tag)
        service.add_tag_to_expense(expense_id, found.id)
        console.print(f"[green]✓ Tagged expense with {found.name}[/green]")
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


@app.command("tag-remove")
def tag_remove(
    expense_id: str = typer.Argument(..., help="Expense ID"),
    tag: str = typer.Argument(..., help="Tag name or ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Detach a tag from an expense."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        found = _resolve_tag(service, tag)
        service.remove_tag_from_expense(expense_id, found.id)
        console.print(f"[green]✓ Removed {found.name} from expense[/green]")
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


# ============================================================================
# Reports
# ============================================================================


@app.command()
def report(
    group_id: str | None = typer.Option(None, "--group", "-g", help="Only this group"),
    personal: bool = typer.Option(False, "--personal", help="Only personal expenses"),
    currency: str | None = typer.Option(None, "--currency", help="Report currency"),
    start: datetime | None = typer.Option(None, "--start", formats=["%Y-%m-%d"], help="From"),
    end: datetime | None = typer.Option(None, "--end", formats=["%Y-%m-%d"], help="Until"),
    months: int = typer.Option(6, "--months", help="Months of trend to show"),
    top: int = typer.Option(5, "--top", help="Number of largest expenses to show"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Spending by category, tag and month, plus the largest expenses."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        filters = {
            "group_id": group_id,
            "personal_only": personal,
            "start_date": start.date() if start else None,
            "end_date": end.date() if end else None,
        }

        categories = service.category_breakdown(currency, **filters)
        if not categories:
            console.print("[yellow]No expenses found.[/yellow]")
            return

        table = Table(title="By Category", show_header=True, header_style="bold magenta")
        table.add_column("Category", style="yellow")
        table.add_column("Count", justify="right")
        table.add_column("Total", justify="right")
        table.add_column("Share", justify="right")
        for item in categories:
            table.add_row(
                item.category, str(item.count), format_money(item.total), f"{item.percentage}%"
            )
        console.print(table)

        by_tag = service.tag_breakdown(currency, **filters)
        if by_tag:
            table = Table(title="By Tag", show_header=True, header_style="bold magenta")
            table.add_column("Tag", style="cyan")
            table.add_column("Count", justify="right")
            table.add_column("Total", justify="right")
            for item in by_tag:
                table.add_row(item.tag.name, str(item.count), format_money(item.total))
            console.print(table)

        table = Table(title="By Month", show_header=True, header_style="bold magenta")
        table.add_column("Month")
        table.add_column("Count", justify="right")
        table.add_column("Total", justify="right")
        for trend in service.monthly_trends(months, currency, **filters):
            table.add_row(trend.month.strftime("%b %Y"), str(trend.count), format_money(trend.total))
        console.print(table)

        table = Table(title="Largest Expenses", show_header=True, header_style="bold magenta")
        table.add_column("Date")
        table.add_column("Category", style="yellow")
        table.add_column("Amount", justify="right")
        for expense in service.highest_expenses(top, currency, **filters):
            table.add_row(expense.date.isoformat(), expense.category, format_money(expense.amount))
        console.print(table)

        average = service.average_daily_spending(currency, **filters)
        console.print(f"\n[bold]Average per day:[/bold] {format_money(average)}")
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


# ============================================================================
# Undo
# ============================================================================


@app.command()
def undo(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Undo the most recent expense, payment or recurring-rule change."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        command = service.undo_last()
        console.print(
            f"[green]✓ Undid {command.action_kind} of {command.entity_kind}[/green]"
        )
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


@app.command()
def history(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of entries"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show the undo history, newest first."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = _open_service(settings)
        entries = service.undo_history(limit)
        if not entries:
            console.print("[yellow]Undo history is empty.[/yellow]")
            return

        table = Table(title="Undo History", show_header=True, header_style="bold magenta")
        table.add_column("When")
        table.add_column("Action", style="yellow")
        table.add_column("Entity", style="cyan")
        for entry in entries:
            table.add_row(
                entry.timestamp.strftime("%Y-%m-%d %H:%M"), entry.action_kind, entry.entity_kind
            )
        console.print(table)
        console.print("[dim]Only the most recent change can be undone.[/dim]")
    except Exception as e:
        _fail(e, verbose)
    finally:
        if db is not None:
            db.close()


if __name__ == "__main__":
    app()
