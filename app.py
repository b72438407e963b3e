"""
app.py
Streamlit Gym Membership & Attendance System.
Run: streamlit run app.py
"""

from __future__ import annotations

import sqlite3
import time
from dataclasses import asdict
from datetime import datetime, timedelta

import pandas as pd
import streamlit as st

import auth
import config
import db
import utils
from device import DeviceError, HikvisionDevice, describe_event
from models import PACKAGE_MONTHS, PAYMENT_METHODS, OutcomeKind, PaymentStatus
from poller import IdentificationPoller, PollerSettings
from status import can_record_payment, member_status, status_counts, utc_today

st.set_page_config(page_title="Gym Management System", layout="wide")


def init_once():
    config.configure_logging()
    # Initialize DB + default admin if needed
    default_hash = auth.hash_password("admin123")
    db.init_db(default_hash)


def require_login():
    if "logged_in" not in st.session_state:
        st.session_state.logged_in = False
    if "username" not in st.session_state:
        st.session_state.username = None


def logout():
    poller = st.session_state.get("poller")
    if poller is not None:
        poller.close()
        st.session_state.poller = None
    st.session_state.logged_in = False
    st.session_state.username = None
    st.success("Logged out.")


def login_screen():
    st.title("🔐 Gym Login")

    col1, col2 = st.columns([1, 1])
    with col1:
        username = st.text_input("Username", value="admin")
        password = st.text_input("Password", type="password")
        if st.button("Login", type="primary"):
            if auth.login(username.strip(), password):
                st.session_state.logged_in = True
                st.session_state.username = username.strip()
                st.rerun()
            else:
                st.error("Invalid username or password.")

    with col2:
        st.info(
            "First run creates a default admin:\n\n"
            "- username: **admin**\n"
            "- password: **admin123**\n\n"
            "You will be forced to change it on first login."
        )


def force_change_password_screen():
    st.title("⚠️ Change Password (Required)")

    st.warning("You must change the default password before using the app.")
    new1 = st.text_input("New password", type="password")
    new2 = st.text_input("Confirm new password", type="password")

    if st.button("Update password", type="primary"):
        if len(new1) < 6:
            st.error("Password must be at least 6 characters.")
            return
        if new1 != new2:
            st.error("Passwords do not match.")
            return
        auth.change_password(st.session_state.username, new1)
        st.success("Password updated. You can continue.")
        st.rerun()


# ---------- Data access helpers ----------

def load_member_statuses(search: str = ""):
    """(member, package, status view) for every member, using one 'today'."""
    today = utc_today()
    members = db.list_members(search)
    packages = {p.id: p for p in db.list_packages()}
    payments = db.payments_for_members([m.id for m in members])
    rows = []
    for m in members:
        package = packages.get(m.assigned_package_id)
        rows.append((m, package, member_status(today, m, package, payments.get(m.id, []))))
    return rows


def member_options(members):
    return {f"{m.full_name} ({m.phone}) - ID {m.id}": m.id for m in members}


def status_badge(view) -> str:
    text = f"<span style='background:{view.tier.color};color:white;padding:4px 10px;border-radius:6px'>{view.label.upper()}</span>"
    if view.expired:
        text += " <span style='color:#C62828'>(package expired)</span>"
    return text


def dashboard_page():
    st.header("📊 Dashboard")

    today = utc_today()
    rows = load_member_statuses()
    counts = status_counts(view for _, _, view in rows)
    todays = db.payments_between(today, today)
    attendance = db.attendance_on(today)

    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Total active members", sum(1 for m, _, _ in rows if m.is_active))
    c2.metric("Due soon", counts[PaymentStatus.DUE_SOON])
    c3.metric("Overdue", counts[PaymentStatus.OVERDUE])
    c4.metric("Today's collection", f"{sum(p.amount for p in todays):,.2f}", f"{len(todays)} payments")

    st.divider()

    st.subheader("Payments due (next 7 days)")
    df = utils.member_status_frame([r for r in rows if r[2].status == PaymentStatus.DUE_SOON])
    if not df.empty:
        st.dataframe(df.sort_values("next_due"), use_container_width=True, hide_index=True)
    else:
        st.caption("No payments due in the next 7 days.")

    st.subheader("Collections (last 30 days)")
    summary = utils.collection_summary(db.payments_between(today - timedelta(days=30), today))
    if not summary.empty:
        st.dataframe(summary, use_container_width=True, hide_index=True)
    else:
        st.caption("No payments in the last 30 days.")

    st.subheader("Today's attendance")
    if attendance:
        st.dataframe(pd.DataFrame([dict(r) for r in attendance]), use_container_width=True, hide_index=True)
    else:
        st.caption("No check-ins yet today.")


def member_form(existing=None):
    if existing:
        st.subheader(f"✏️ Edit Member (ID: {existing.id})")
    else:
        st.subheader("➕ Add Member")

    col1, col2 = st.columns(2)
    with col1:
        full_name = st.text_input("Full name", value=(existing.full_name if existing else ""))
        phone = st.text_input("Phone", value=(existing.phone if existing else ""))
        nic = st.text_input("NIC (optional)", value=((existing.nic or "") if existing else ""))
    with col2:
        email = st.text_input("Email (optional)", value=((existing.email or "") if existing else ""))
        is_active = st.checkbox("Active", value=(existing.is_active if existing else True))

    errors = utils.validate_member_inputs(full_name, phone, email)
    if errors:
        for e in errors:
            st.error(e)

    if st.button("Save", type="primary", disabled=bool(errors)):
        if existing:
            db.update_member(existing.id, full_name.strip(), phone.strip(), nic.strip() or None,
                             email.strip() or None, is_active)
            st.success("Member updated.")
        else:
            db.add_member(full_name.strip(), phone.strip(), nic.strip() or None, email.strip() or None,
                          is_active=is_active)
            st.success("Member added.")
        st.rerun()


def assign_package_form(member):
    st.subheader("📦 Assign package")
    packages = db.list_packages(active_only=True)
    if not packages:
        st.info("No active packages. Add one on the Packages page.")
        return
    labels = {f"{p.name} - {p.price:,.2f} ({p.duration_months} month{'s' if p.duration_months > 1 else ''})": p.id
              for p in packages}
    ids = list(labels.values())
    index = ids.index(member.assigned_package_id) if member.assigned_package_id in ids else 0
    chosen = st.selectbox("Package", list(labels.keys()), index=index)
    custom = st.text_input(
        "Custom amount (leave empty for package price)",
        value=(f"{member.custom_package_amount:.2f}" if member.custom_package_amount is not None else ""),
    )
    if st.button("Assign package"):
        amount = None
        if custom.strip():
            amount = utils.parse_amount(custom)
            if amount is None:
                st.error("Please enter a valid amount or leave empty for default price.")
                return
        db.assign_package(member.id, labels[chosen], amount)
        st.success("Package assigned.")
        st.rerun()


def members_page():
    st.header("👥 Members")

    with st.sidebar:
        st.subheader("Search & Filters")
        search = st.text_input("Search (name/phone/NIC)")
        status_filter = st.selectbox("Status", ["All"] + [s.value for s in PaymentStatus])

    rows = load_member_statuses(search)
    if status_filter != "All":
        rows = [r for r in rows if r[2].label == status_filter]
    df = utils.member_status_frame(rows)
    st.dataframe(df, use_container_width=True, hide_index=True)

    st.divider()

    options = member_options([m for m, _, _ in rows])
    selected = st.selectbox("Select member", ["(none)"] + list(options.keys()))
    if selected != "(none)":
        member_id = options[selected]
        member, package, view = next(r for r in rows if r[0].id == member_id)
        st.markdown(status_badge(view), unsafe_allow_html=True)
        if view.projected:
            st.caption(f"Next due {view.next_due_date} (after payment)")

        c1, c2, c3 = st.columns(3)
        with c1:
            if st.button("Edit"):
                st.session_state.edit_member_id = member_id
                st.rerun()
        with c2:
            if st.button("View payments"):
                st.session_state.payments_member_id = member_id
                st.session_state.page = "Payments"
                st.rerun()
        with c3:
            if st.button("Attendance history"):
                history = db.recent_attendance(member_id, config.HISTORY_LIMIT)
                st.dataframe(pd.DataFrame([asdict(a) for a in history]), use_container_width=True, hide_index=True)
        assign_package_form(member)

    st.divider()

    if st.session_state.get("edit_member_id"):
        existing = db.get_member(st.session_state.edit_member_id)
        if existing:
            member_form(existing=existing)
        if st.button("Cancel edit"):
            st.session_state.edit_member_id = None
            st.rerun()
    else:
        member_form(existing=None)


def payments_page():
    st.header("💳 Payments")

    members = db.list_members()
    if not members:
        st.info("No members yet. Add a member first.")
        return

    options = member_options(members)
    label_list = list(options.keys())
    default_member_id = st.session_state.get("payments_member_id", members[0].id)
    ids = list(options.values())
    default_index = ids.index(default_member_id) if default_member_id in ids else 0
    chosen_label = st.selectbox("Member", label_list, index=default_index)
    member_id = options[chosen_label]
    st.session_state.payments_member_id = member_id

    member, package = db.get_member_with_package(member_id)
    today = utc_today()
    last = db.latest_payment(member_id, member.assigned_package_id)
    view = member_status(today, member, package, [last] if last else [])
    st.markdown(status_badge(view), unsafe_allow_html=True)

    st.subheader("Add payment")
    if package is None:
        st.warning("Assign a package to this member before recording a payment.")
    elif not can_record_payment(today, last):
        st.info(
            "Payment is already completed for the current package.\n\n"
            f"Package ends {last.end_date}, next payment due {last.next_due_date}."
        )
    else:
        default_amount = member.custom_package_amount if member.custom_package_amount is not None else package.price
        c1, c2, c3, c4 = st.columns([1, 1, 1, 2])
        with c1:
            amount = st.text_input("Amount", value=f"{default_amount:.2f}")
        with c2:
            pay_date = st.date_input("Payment date", value=today)
        with c3:
            start_date = st.date_input("Start date", value=today)
        with c4:
            method = st.selectbox("Method", PAYMENT_METHODS)
        remarks = st.text_input("Remarks", value="")

        if st.button("Record payment", type="primary"):
            amt = utils.parse_amount(amount)
            if amt is None:
                st.error("Please enter a valid amount.")
            else:
                try:
                    db.record_payment(member_id, package.id, amt, pay_date, start_date, method, remarks.strip() or None)
                except sqlite3.Error as e:
                    st.error(f"Error saving payment: {e}")
                else:
                    st.success("Payment recorded.")
                    st.rerun()

    st.divider()

    st.subheader("Payment history")
    payments = db.payments_for_member(member_id)
    if payments:
        st.dataframe(pd.DataFrame([asdict(p) for p in payments]), use_container_width=True, hide_index=True)
        st.caption(f"Total paid: {sum(p.amount for p in payments):,.2f}")
    else:
        st.caption("No payments for this member yet.")


def packages_page():
    st.header("📦 Packages")

    packages = db.list_packages()
    if packages:
        st.dataframe(pd.DataFrame([asdict(p) for p in packages]), use_container_width=True, hide_index=True)

    st.subheader("Add / edit package")
    options = {"(new package)": None}
    options.update({f"{p.name} - ID {p.id}": p for p in packages})
    chosen = options[st.selectbox("Package", list(options.keys()))]

    name = st.text_input("Name", value=(chosen.name if chosen else ""))
    months = st.selectbox("Duration (months)", PACKAGE_MONTHS,
                          index=(PACKAGE_MONTHS.index(chosen.duration_months)
                                 if chosen and chosen.duration_months in PACKAGE_MONTHS else 0))
    price = st.text_input("Price", value=(f"{chosen.price:.2f}" if chosen else ""))
    description = st.text_input("Description", value=((chosen.description or "") if chosen else ""))
    active = st.checkbox("Active", value=(chosen.is_active if chosen else True))

    errors = utils.validate_package_inputs(name, months, price)
    if st.button("Save package", type="primary"):
        if errors:
            for e in errors:
                st.error(e)
            return
        if chosen:
            db.update_package(chosen.id, name.strip(), months, utils.parse_amount(price), description.strip() or None, active)
        else:
            db.add_package(name.strip(), months, utils.parse_amount(price), description.strip() or None)
        st.success("Package saved.")
        st.rerun()


def attendance_page():
    st.header("🕒 Attendance")

    members = db.list_members()
    if not members:
        st.info("No members yet.")
        return

    options = member_options(members)
    chosen = st.selectbox("Member", list(options.keys()))
    c1, c2 = st.columns(2)
    with c1:
        day = st.date_input("Date", value=utc_today())
    with c2:
        at = st.time_input("Time", value=datetime.now().time().replace(second=0, microsecond=0))
    remarks = st.text_input("Remarks", value="")

    if st.button("Mark attendance", type="primary"):
        attendance, created = db.mark_attendance(options[chosen], day, at, "manual", remarks.strip() or None)
        if created:
            st.success("Attendance marked.")
        else:
            st.info(f"Already checked in at {attendance.check_in_time}; check-out time updated.")

    st.divider()

    st.subheader("Check-ins for the day")
    rows = db.attendance_on(day)
    if rows:
        st.dataframe(pd.DataFrame([dict(r) for r in rows]), use_container_width=True, hide_index=True)
    else:
        st.caption("No attendance recorded for this day.")


def get_device() -> HikvisionDevice:
    if st.session_state.get("device") is None:
        st.session_state.device = HikvisionDevice()
    return st.session_state.device


def get_poller() -> IdentificationPoller:
    if st.session_state.get("poller") is None:
        st.session_state.poller = IdentificationPoller(get_device(), db, PollerSettings.from_env())
        st.session_state.poll_outcomes = []
    return st.session_state.poller


def member_status_page():
    st.header("🔎 Member Status")

    poller = get_poller()
    outcomes = st.session_state.poll_outcomes

    label = "CANCEL SCANNING" if poller.is_listening else "CHECK MEMBER STATUS"
    if st.button(label, type="primary"):
        outcomes.clear()
        poller.start(outcomes.append)
        st.rerun()

    if poller.is_listening:
        st.info("Waiting for device event... ask the member to scan their finger.")
        time.sleep(config.POLL_INTERVAL)
        st.rerun()

    if not outcomes:
        st.caption("Click the button to start identification mode.")
        return

    outcome = outcomes[-1]
    if outcome.kind == OutcomeKind.CONFIG_ERROR:
        st.warning(outcome.message)
    elif outcome.kind == OutcomeKind.CONNECTION_ERROR:
        st.error(outcome.message)
    elif outcome.kind == OutcomeKind.DATABASE_ERROR:
        st.error(outcome.message)
    elif outcome.kind == OutcomeKind.NOT_FOUND:
        st.warning(outcome.message)
    else:
        snap = outcome.snapshot
        st.subheader(snap.member.full_name)
        st.caption(f"ID: {snap.member.id}")
        st.write(f"Package: **{snap.package.name if snap.package else 'No Package'}**")
        st.markdown(status_badge(snap.status), unsafe_allow_html=True)
        due = snap.status.next_due_date
        st.write(f"Next due: **{due.strftime('%b %d, %Y') if due else 'N/A'}**"
                 + (" (after payment)" if snap.status.projected else ""))
        if snap.recent_attendance:
            st.dataframe(
                pd.DataFrame([{"check_in": a.checked_in_at, "source": a.source} for a in snap.recent_attendance]),
                use_container_width=True,
                hide_index=True,
            )
        else:
            st.caption("No attendance recorded yet.")


def devices_page():
    st.header("🖐️ Biometric Device")

    current = db.get_configured_device()
    name = st.text_input("Device name", value=(current.name if current else "Front door"))
    c1, c2 = st.columns(2)
    with c1:
        address = st.text_input("IP address", value=(current.address if current else ""))
        username = st.text_input("Username", value=(current.username if current else "admin"))
    with c2:
        port = st.number_input("Port", min_value=1, max_value=65535, value=(current.port if current else 80))
        password = st.text_input("Password", type="password", value=(current.password if current else ""))

    errors = utils.validate_device_inputs(name, address, port, username)
    if st.button("Save device", type="primary"):
        if errors:
            for e in errors:
                st.error(e)
        else:
            db.save_device(name.strip(), address.strip(), int(port), username.strip(), password,
                           device_id=(current.id if current else None))
            # next connect picks up the saved address and credentials
            get_device().disconnect()
            st.success("Device saved.")
            st.rerun()

    if current is None:
        st.caption("No device configured yet.")
        return

    device = get_device()
    if st.button("Test connection"):
        ok, message = device.connect(current.to_config())
        db.set_device_connected(current.id, ok)
        if ok:
            st.success("Connected.")
        else:
            st.error("Connection failed.")
        st.code(message)

    st.divider()

    st.subheader("Recent device events (last hour)")
    if st.button("Load events"):
        try:
            if not device.is_connected:
                device.connect(current.to_config())
            events = device.get_recent_events(datetime.now() - timedelta(hours=1))
        except DeviceError as e:
            st.error(f"Error loading events: {e}")
        else:
            names = {str(m.id): m.full_name for m in db.list_members()}
            st.dataframe(
                pd.DataFrame([
                    {
                        "time": ev.timestamp,
                        "member": names.get(ev.subject_id) or ev.name or "Unknown / Guest",
                        "employee_no": ev.subject_id,
                        "event": describe_event(ev),
                    }
                    for ev in events
                ]),
                use_container_width=True,
                hide_index=True,
            )

    st.divider()

    st.subheader("Enroll fingerprint")
    members = db.list_members()
    if not members:
        st.caption("No members to enroll.")
        return
    options = member_options(members)
    chosen = st.selectbox("Member", list(options.keys()), key="enroll_member")
    member_id = options[chosen]
    if st.button("Start enrollment"):
        member = db.get_member(member_id)
        try:
            if not device.is_connected:
                ok, message = device.connect(current.to_config())
                if not ok:
                    db.log_enrollment(member_id, current.id, "Connection Failed", False, message)
                    st.error(message)
                    return
            device.enroll_member(member_id, member.full_name)
            ok, message = device.capture_fingerprint(member_id)
        except DeviceError as e:
            db.log_enrollment(member_id, current.id, "User Create Failed", False, str(e))
            st.error(str(e))
        else:
            db.log_enrollment(member_id, current.id, "Success" if ok else "Capture Failed", ok, message)
            if ok:
                st.success(message)
            else:
                st.error(message)

    history = db.enrollment_history(member_id)
    if history:
        st.dataframe(pd.DataFrame([asdict(h) for h in history]), use_container_width=True, hide_index=True)


def settings_page():
    st.header("⚙️ Settings")

    st.subheader("Change password")
    p1 = st.text_input("New password", type="password")
    p2 = st.text_input("Confirm new password", type="password")
    if st.button("Update password", type="primary"):
        if len(p1) < 6:
            st.error("Password must be at least 6 characters.")
        elif p1 != p2:
            st.error("Passwords do not match.")
        else:
            auth.change_password(st.session_state.username, p1)
            st.success("Password updated.")

    st.divider()

    st.subheader("Add staff user")
    new_user = st.text_input("Username", key="new_user")
    new_name = st.text_input("Full name", key="new_name")
    new_pw = st.text_input("Password", type="password", key="new_pw")
    role = st.selectbox("Role", ["staff", "admin"])
    if st.button("Add user"):
        if not new_user.strip() or not new_name.strip() or len(new_pw) < 6:
            st.error("Username, full name and a 6+ character password are required.")
        else:
            try:
                auth.add_user(new_user.strip(), new_pw, new_name.strip(), role)
            except ValueError as e:
                st.error(str(e))
            else:
                st.success("User added.")

    st.divider()

    st.subheader("Sample data")
    st.caption("Insert sample packages, members and payments for testing (adds new rows each run).")
    if st.button("Insert sample data"):
        utils.insert_sample_data()
        st.success("Sample data inserted.")
        st.rerun()


def main_app():
    st.sidebar.title("🏋️ Gym System")
    st.sidebar.caption(f"Logged in as: {st.session_state.username}")

    pages = ["Dashboard", "Members", "Payments", "Packages", "Attendance", "Member Status", "Device", "Settings"]
    if "page" not in st.session_state:
        st.session_state.page = "Dashboard"
    st.session_state.page = st.sidebar.radio("Navigate", pages, index=pages.index(st.session_state.page))

    if st.sidebar.button("Logout"):
        logout()
        st.rerun()

    if st.session_state.page == "Dashboard":
        dashboard_page()
    elif st.session_state.page == "Members":
        members_page()
    elif st.session_state.page == "Payments":
        payments_page()
    elif st.session_state.page == "Packages":
        packages_page()
    elif st.session_state.page == "Attendance":
        attendance_page()
    elif st.session_state.page == "Member Status":
        member_status_page()
    elif st.session_state.page == "Device":
        devices_page()
    elif st.session_state.page == "Settings":
        settings_page()


# --------- App entry ---------

def run():
    init_once()
    require_login()

    if not st.session_state.logged_in:
        login_screen()
        return

    # Force password change on first login after DB creation
    if db.is_force_password_change():
        force_change_password_screen()
        return

    main_app()


if __name__ == "__main__":
    run()
