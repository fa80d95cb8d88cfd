"""
Flask CLI commands for the clinical ledger.

Commands:
- flask init-db: Create the tables
- flask seed-templates: Add or update procedure catalog entries
- flask ledger-report: Print a patient's saved sessions with running balance
- flask pending-balances: List patients who still owe money
"""

import click
from flask import current_app
from clinic import database
from clinic.database import get_session
from clinic.exceptions import ClinicError
from clinic.models import Patient, TemplateRecord
from clinic.services import balance_service
from clinic.services.repository import SqlAlchemyLedgerRepository
from clinic.utils.formatters import money, date_ar


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create every table."""
        database.create_all()
        click.echo(click.style('✅ Tablas creadas.', fg='green'))

    @app.cli.command('seed-templates')
    @click.option('--name', 'names', multiple=True, required=True, help='Procedure name (repeatable)')
    @click.option('--price', 'prices', multiple=True, type=int, required=True, help='Price for each --name')
    def seed_templates(names, prices):
        """Add or update procedure catalog entries, keeping the existing ones."""
        if len(names) != len(prices):
            click.echo(click.style('❌ Cada --name necesita su --price.', fg='red'))
            return

        repo = SqlAlchemyLedgerRepository(get_session())
        current = {t.name: t for t in repo.load_procedure_templates()}
        for name, price in zip(names, prices):
            existing = current.get(name)
            current[name] = TemplateRecord(id=existing.id if existing else None, name=name, default_price=price)

        try:
            repo.save_procedure_templates(list(current.values()))
        except ClinicError as e:
            click.echo(click.style(f'❌ {e.message}', fg='red'))
            return

        click.echo(click.style(f'✅ Catálogo actualizado ({len(current)} procedimientos).', fg='green'))

    @app.cli.command('ledger-report')
    @click.option('--patient-id', type=int, required=True, help='Patient ID')
    def ledger_report(patient_id):
        """Print saved sessions with balance and running balance."""
        db_session = get_session()
        patient = db_session.query(Patient).filter_by(id=patient_id).first()
        if not patient:
            click.echo(click.style(f'❌ Paciente {patient_id} no encontrado.', fg='red'))
            return

        symbol = current_app.config.get('CURRENCY_SYMBOL', '$')
        sessions = SqlAlchemyLedgerRepository(db_session).load_sessions(patient_id)
        by_id = {s.key.to_legacy(): s for s in sessions}

        click.echo(click.style(f'\n{patient.full_name}', bold=True))
        for row in balance_service.running_balances(sessions):
            session = by_id[row['id']]
            click.echo(
                f"  {date_ar(row['date'])}  #{row['id']:<5} "
                f"{(session.reason_type or '-'):<20} "
                f"saldo {money(row['balance'], symbol):>12}  "
                f"acumulado {money(row['cumulative_balance'], symbol):>12}"
            )

        summary = balance_service.financial_summary(sessions)
        click.echo(f"\n  Presupuesto: {money(summary['total_budget'], symbol)}")
        click.echo(f"  Descuentos:  {money(summary['total_discount'], symbol)}")
        click.echo(f"  Abonos:      {money(summary['total_payment'], symbol)}")
        click.echo(click.style(f"  Saldo:       {money(summary['outstanding'], symbol)}", bold=True))

    @app.cli.command('pending-balances')
    def pending_balances():
        """List active patients with a positive balance."""
        symbol = current_app.config.get('CURRENCY_SYMBOL', '$')
        rows = SqlAlchemyLedgerRepository(get_session()).pending_balances()
        if not rows:
            click.echo(click.style('✅ No hay saldos pendientes.', fg='green'))
            return

        for row in rows:
            click.echo(
                f"  {row['full_name']:<30} {(row['phone'] or '-'):<15} "
                f"{money(row['current_balance'], symbol):>12}  última visita {date_ar(row['last_visit'])}"
            )
