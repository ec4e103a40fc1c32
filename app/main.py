"""
Streamlit Console for TeamLedger

A small front end over the flows, for running a team ledger without an
API server.

DESIGN PRINCIPLES:
1. Every action goes through a flow (no direct storage access)
2. Errors are shown in plain language, validation issues one per line
3. Members who can't edit an entry directly are offered a change request
4. Pending requests are listed for owners and admins to confirm or reject
"""

import asyncio
from datetime import date
from decimal import Decimal

import streamlit as st

from teamledger.config import validate_all_settings
from teamledger.errors import LedgerError, PayloadValidationError
from teamledger.models import (
    Category,
    ChangeRequestKind,
    ChangeRequestStatus,
    InvitationStatus,
    RegistrationRequest,
    Role,
    TeamCreate,
    TransactionDraft,
    TransactionType,
    TransactionUpdate,
)
from teamledger.orchestrator import AppComponents, create_app_components
from teamledger.validation import LedgerValidator


# Page configuration
st.set_page_config(
    page_title="TeamLedger",
    page_icon="📒",
    layout="wide",
    initial_sidebar_state="expanded",
)


def run_async(coro):
    """Helper to run async functions in Streamlit."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        # Notifications queued by the call run on this loop
        loop.run_until_complete(get_components().notifier.drain())
        loop.close()


@st.cache_resource
def get_components() -> AppComponents:
    """Get or create application components (cached)."""
    try:
        return create_app_components(use_database=True)
    except Exception as e:
        st.error(f"Failed to open the database, using a temporary in-memory ledger: {e}")
        return create_app_components(use_database=False, use_sheets_audit=False)


def show_error(error: LedgerError):
    """Render a workflow error for humans."""
    if isinstance(error, PayloadValidationError) and error.issues:
        st.error(error.message)
        st.markdown(LedgerValidator.get_user_friendly_summary(error.issues))
    else:
        st.error(error.message)


def call(coro):
    """Run a flow call; show LedgerErrors instead of raising them."""
    try:
        return run_async(coro)
    except LedgerError as e:
        show_error(e)
        return None


def main():
    """Main application entry point."""
    app = get_components()

    st.sidebar.title("📒 TeamLedger")
    st.sidebar.markdown("---")

    user = st.session_state.get("user")
    if user is None:
        render_login_page(app)
        return

    st.sidebar.markdown(f"Signed in as **{user.full_name}**")
    if st.sidebar.button("Sign out"):
        st.session_state.clear()
        st.rerun()

    teams = call(app.teams.list_teams(user.id, limit=100)) or []
    team = None
    if teams:
        team = st.sidebar.selectbox(
            "Team",
            options=teams,
            format_func=lambda t: t.name,
        )

    page = st.sidebar.radio(
        "Navigate to:",
        ["📋 Transactions", "📝 Change Requests", "📊 Report", "👥 Team", "📬 Inbox", "⚙️ Settings"],
        index=0,
    )

    if page == "⚙️ Settings":
        render_settings_page()
    elif page == "📬 Inbox":
        render_inbox_page(app, user)
    elif team is None:
        render_create_team(app, user)
    elif page == "📋 Transactions":
        render_transactions_page(app, user, team)
    elif page == "📝 Change Requests":
        render_requests_page(app, user, team)
    elif page == "📊 Report":
        render_report_page(app, user, team)
    elif page == "👥 Team":
        render_team_page(app, user, team)


def render_login_page(app: AppComponents):
    st.title("Welcome to TeamLedger")
    sign_in, register, forgot = st.tabs(["Sign in", "Create account", "Forgot password"])

    with sign_in:
        email = st.text_input("Email", key="login_email")
        password = st.text_input("Password", type="password", key="login_password")
        if st.button("Sign in", type="primary"):
            user = call(app.accounts.authenticate(email, password))
            if user:
                st.session_state["user"] = user
                st.rerun()

    with register:
        first_name = st.text_input("First name")
        last_name = st.text_input("Last name")
        email = st.text_input("Email", key="register_email")
        password = st.text_input("Password", type="password", key="register_password")
        if st.button("Create account"):
            user = call(app.accounts.register(RegistrationRequest(
                email=email,
                password=password,
                first_name=first_name,
                last_name=last_name,
            )))
            if user:
                st.session_state["user"] = user
                st.rerun()

    with forgot:
        reset_email = st.text_input("Email", key="reset_email")
        if st.button("Email me a reset code"):
            call(app.accounts.request_password_reset(reset_email))
            st.info("If that address is registered, a reset code is on its way.")
        code = st.text_input("Reset code", key="reset_code")
        new_password = st.text_input("New password", type="password", key="reset_password")
        if st.button("Set new password"):
            if call(app.accounts.reset_password(code, new_password)):
                st.success("Password changed. You can sign in now.")


def render_inbox_page(app: AppComponents, user):
    st.title("📬 Inbox")

    with st.expander("Join a team with an invitation code"):
        token = st.text_input("Invitation code")
        col1, col2 = st.columns(2)
        with col1:
            if st.button("Accept", type="primary"):
                if call(app.teams.respond_to_invitation(user.id, token, accept=True)):
                    st.rerun()
        with col2:
            if st.button("Decline"):
                if call(app.teams.respond_to_invitation(user.id, token, accept=False)):
                    st.success("Invitation declined")

    unread_only = st.checkbox("Unread only")
    inbox = call(app.accounts.list_notifications(user.id, unread_only=unread_only))
    if inbox is None:
        return
    st.caption(f"{inbox.unread_count} unread")
    if inbox.unread_count and st.button("Mark all as read"):
        call(app.accounts.mark_notifications_read(user.id))
        st.rerun()
    for notification in inbox.items:
        with st.container(border=True):
            marker = "" if notification.is_read else "🔵 "
            st.markdown(f"{marker}**{notification.title}** · {notification.created_at:%Y-%m-%d %H:%M}")
            st.text(notification.body)


def render_create_team(app: AppComponents, user):
    st.title("Create your first team")
    name = st.text_input("Team name")
    currency = st.selectbox("Currency", ["USD", "EUR", "VND", "JPY"])
    budget = st.number_input("Monthly budget", min_value=0.0, step=100.0)
    if st.button("Create team", type="primary"):
        team = call(app.teams.create_team(user.id, TeamCreate(
            name=name,
            currency=currency,
            budget=Decimal(str(budget)).quantize(Decimal("0.01")),
        )))
        if team:
            st.success(f"Team {team.name} created")
            st.rerun()


def render_transactions_page(app: AppComponents, user, team):
    st.title(f"📋 {team.name}")

    with st.expander("➕ Add transaction"):
        kind = st.radio("Type", list(TransactionType), format_func=lambda t: t.value.title(), horizontal=True)
        amount = st.number_input("Amount", min_value=0.0, step=1.0, key="add_amount")
        category = st.selectbox(
            "Category",
            team.categories,
            format_func=lambda c: f"{c.icon} {c.name}",
            key="add_category",
        )
        description = st.text_input("Description", key="add_description")
        when = st.date_input("Date", value=date.today(), key="add_date")
        if st.button("Save transaction", type="primary"):
            txn = call(app.transactions.add_transaction(user.id, TransactionDraft(
                team_id=team.id,
                amount=Decimal(str(amount)).quantize(Decimal("0.01")),
                type=kind,
                category_name=category.name if category else "",
                description=description or None,
                transaction_date=when,
            )))
            if txn:
                st.success("Transaction saved")

    page_number = st.number_input("Page", min_value=1, value=1, step=1)
    result = call(app.transactions.list_transactions(user.id, team.id, page=int(page_number)))
    if result is None:
        return

    st.caption(
        f"Page {result.pagination.page} of {max(result.pagination.total_pages, 1)} "
        f"({result.pagination.total_items} transactions)"
    )
    for txn in result.items:
        sign = "+" if txn.type == TransactionType.INCOME else "-"
        with st.container(border=True):
            st.markdown(
                f"**{txn.category_icon or ''} {txn.category_name}**  {sign}{team.currency} {txn.amount:,.2f}"
                f"  ·  {txn.transaction_date.isoformat()}"
            )
            if txn.description:
                st.caption(txn.description)
            render_transaction_actions(app, user, txn)


def render_transaction_actions(app: AppComponents, user, txn):
    """Edit/delete directly when allowed, otherwise via a change request."""
    key = str(txn.id)
    new_amount = st.number_input("New amount", min_value=0.0, value=float(txn.amount), key=f"amt_{key}")
    reason = st.text_input("Reason (for requests)", key=f"reason_{key}")
    col1, col2, col3, col4 = st.columns(4)
    update = TransactionUpdate(amount=Decimal(str(new_amount)).quantize(Decimal("0.01")))

    with col1:
        if st.button("Edit", key=f"edit_{key}"):
            if call(app.transactions.edit_transaction(user.id, txn.id, update)):
                st.rerun()
    with col2:
        if st.button("Delete", key=f"delete_{key}"):
            try:
                run_async(app.transactions.delete_transaction(user.id, txn.id))
                st.rerun()
            except LedgerError as e:
                show_error(e)
    with col3:
        if st.button("Request edit", key=f"redit_{key}"):
            if call(app.change_requests.request_edit(user.id, txn.id, update, reason)):
                st.success("Edit requested")
    with col4:
        if st.button("Request delete", key=f"rdel_{key}"):
            if call(app.change_requests.request_delete(user.id, txn.id, reason)):
                st.success("Deletion requested")


def render_requests_page(app: AppComponents, user, team):
    st.title("📝 Change Requests")
    status = st.selectbox(
        "Status",
        [ChangeRequestStatus.PENDING, None, ChangeRequestStatus.CONFIRMED, ChangeRequestStatus.REJECTED],
        format_func=lambda s: "All" if s is None else s.value.title(),
    )
    requests = call(app.change_requests.list_change_requests(user.id, team.id, status)) or []
    if not requests:
        st.info("No change requests.")
        return

    for request in requests:
        with st.container(border=True):
            label = "✏️ Edit" if request.kind == ChangeRequestKind.EDIT else "🗑️ Delete"
            st.markdown(f"**{label}** · {request.status.value} · {request.created_at:%Y-%m-%d %H:%M}")
            if request.reason:
                st.caption(request.reason)
            if request.payload:
                st.json(request.payload)
            if request.resolution_note:
                st.caption(f"Note: {request.resolution_note}")

            if request.is_pending:
                note = st.text_input("Note", key=f"note_{request.id}")
                col1, col2 = st.columns(2)
                with col1:
                    if st.button("✅ Confirm", key=f"confirm_{request.id}"):
                        if call(app.change_requests.resolve(user.id, request.id, ChangeRequestStatus.CONFIRMED, note)):
                            st.rerun()
                with col2:
                    if st.button("❌ Reject", key=f"reject_{request.id}"):
                        if call(app.change_requests.resolve(user.id, request.id, ChangeRequestStatus.REJECTED, note)):
                            st.rerun()


def render_report_page(app: AppComponents, user, team):
    st.title("📊 Report")
    summary = call(app.reports.team_summary(user.id, team.id))
    if summary is None:
        return

    col1, col2, col3 = st.columns(3)
    col1.metric("Income", f"{summary.currency} {summary.total_income:,.2f}")
    col2.metric("Expense", f"{summary.currency} {summary.total_expense:,.2f}")
    col3.metric("Balance", f"{summary.currency} {summary.balance:,.2f}")

    if summary.budget > 0:
        st.progress(min(float(summary.budget_usage_percent) / 100, 1.0), text=f"Budget used: {summary.budget_usage_percent}%")
    if summary.income_goal > 0:
        st.progress(min(float(summary.income_goal_progress_percent) / 100, 1.0), text=f"Income goal: {summary.income_goal_progress_percent}%")

    st.table([
        {
            "Category": c.category_name,
            "Income": f"{c.income:,.2f}",
            "Expense": f"{c.expense:,.2f}",
            "Count": c.count,
        }
        for c in summary.categories
    ])


def render_team_page(app: AppComponents, user, team):
    st.title(f"👥 {team.name}")

    members = call(app.teams.list_members(user.id, team.id)) or []
    st.table([
        {"Name": m.user.full_name, "Email": m.user.email, "Role": m.role.value}
        for m in members
    ])

    with st.expander("Invite member"):
        email = st.text_input("Email")
        role = st.selectbox("Role", [Role.MEMBER, Role.ADMIN], format_func=lambda r: r.value.title())
        if st.button("Send invitation"):
            invitation = call(app.teams.invite_member(user.id, team.id, email, role))
            if invitation:
                st.success(f"Invitation sent. Code: {invitation.token}")
        my_role = next((m.role for m in members if m.user.id == user.id), None)
        if my_role in (Role.OWNER, Role.ADMIN):
            pending = call(app.teams.list_invitations(user.id, team.id, InvitationStatus.PENDING)) or []
        else:
            pending = []
        for invitation in pending:
            st.caption(f"Pending: {invitation.email} as {invitation.role.value}, expires {invitation.expires_at:%Y-%m-%d}")

    with st.expander("Settings"):
        name = st.text_input("Name", value=team.name)
        budget = st.number_input("Budget", min_value=0.0, value=float(team.budget))
        goal = st.number_input("Income goal", min_value=0.0, value=float(team.income_goal))
        allow = st.checkbox("Members may view reports", value=team.allow_member_view_report)
        if st.button("Save settings"):
            if name != team.name:
                call(app.teams.rename_team(user.id, team.id, name))
            call(app.teams.set_budget(user.id, team.id, Decimal(str(budget)).quantize(Decimal("0.01"))))
            call(app.teams.set_income_goal(user.id, team.id, Decimal(str(goal)).quantize(Decimal("0.01"))))
            call(app.teams.set_report_permission(user.id, team.id, allow))

    with st.expander("Add category"):
        cat_name = st.text_input("Category name")
        icon = st.text_input("Icon", value="🏷️")
        if st.button("Add category"):
            if call(app.teams.add_category(user.id, team.id, Category(name=cat_name or "?", icon=icon or "🏷️"))):
                st.rerun()

    st.markdown("---")
    if st.button("Leave team"):
        try:
            run_async(app.teams.leave_team(user.id, team.id))
            st.rerun()
        except LedgerError as e:
            show_error(e)
    if st.button("🗑️ Delete team", type="secondary"):
        try:
            run_async(app.teams.delete_team(user.id, team.id))
            st.rerun()
        except LedgerError as e:
            show_error(e)


def render_settings_page():
    """Render the settings page."""
    st.title("⚙️ Settings")
    st.markdown("### Connection Status")

    status = validate_all_settings()
    services = [
        ("Database", "database"),
        ("Google Sheets (Audit log)", "google_sheets"),
        ("Email (SMTP)", "email"),
        ("Application", "app"),
    ]
    for name, key in services:
        if status.get(key, False):
            st.success(f"✅ {name} - Configured")
        else:
            error = status.get(f"{key}_error", "Not configured")
            st.error(f"❌ {name} - {error}")

    st.markdown("---")
    st.markdown(
        "Configuration is read from environment variables or a `.env` file "
        "(`DATABASE_URL`, `GOOGLE_SHEETS_CREDENTIALS_PATH`, `GOOGLE_SHEETS_SPREADSHEET_ID`, "
        "`SMTP_ENABLED`, `SMTP_HOST`, ...)."
    )


if __name__ == "__main__":
    main()
