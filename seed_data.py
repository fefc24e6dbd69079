#!/usr/bin/env python3
"""
F-System Demo Data Seeding Script
Populates the database with a demo funding cycle, grant call, ERRs and workplans
"""

from app import (
    app, db, ensure_seed_data, User, Donor, EmergencyRoom, GrantCall, FundingCycle,
    CycleGrantInclusion, CycleTranche, CycleStateAllocation, Grant, Project, HistoricalActivity,
)
from budget_helpers import FUNDING_UNASSIGNED, FUNDING_ALLOCATED, FUNDING_COMMITTED, STATUS_PENDING, STATUS_APPROVED
from permissions import ROLE_SUPERADMIN, ROLE_ADMIN, ROLE_STATE_ERR, ROLE_BASE_ERR
from datetime import date

DEMO_USERS = [
    ("superadmin@fsystem.local", "Portal Superadmin", "superadmin123", ROLE_SUPERADMIN, None),
    ("admin@fsystem.local", "Grants Officer", "admin123", ROLE_ADMIN, None),
    ("khartoum@fsystem.local", "Khartoum State ERR", "state123", ROLE_STATE_ERR, "Khartoum"),
    ("base.kh@fsystem.local", "Bahri Base ERR", "base123", ROLE_BASE_ERR, "Khartoum"),
]

def seed_users():
    """Create demo users with different roles"""
    print("\nSeeding users...")
    existing_count = User.query.count()
    if existing_count > 0:
        print(f"  Skipping - {existing_count} users already exist")
        return

    for email, full_name, password, role, state in DEMO_USERS:
        user = User(email=email, full_name=full_name, role=role, state=state)
        user.set_password(password)
        db.session.add(user)
    db.session.commit()
    print(f"✓ Created {len(DEMO_USERS)} users")

def seed_donors():
    print("\nSeeding donors and grant calls...")
    if Donor.query.count() > 0:
        print("  Skipping - donors already exist")
        return

    donor = Donor(name="People to Help", short_name="P2H")
    db.session.add(donor)
    db.session.flush()
    db.session.add(GrantCall(name="P2H Emergency Call 2025", shortname="P2H-EC25", donor_id=donor.id, amount=250000))
    db.session.add(GrantCall(name="P2H Open Window", shortname="P2H-OW", donor_id=donor.id, amount=None))
    db.session.add(Grant(grant_id="P2H-2025-01", project_name="Emergency response", donor_id=donor.id,
                         donor_name=donor.name, total_transferred_amount_usd=120000, sum_transfer_fee_amount=1500))
    db.session.commit()
    print("✓ Created 1 donor, 2 grant calls and 1 received grant")

def seed_cycle():
    print("\nSeeding funding cycle...")
    if FundingCycle.query.count() > 0:
        print("  Skipping - cycles already exist")
        return

    grant_call = GrantCall.query.filter_by(shortname="P2H-EC25").first()
    cycle = FundingCycle(cycle_number=1, year=date.today().year, name="Cycle 1", type='tranches',
                         tranche_count=2, tranche_splits=[60000, 40000], start_date=date.today())
    cycle.tranches = [
        CycleTranche(tranche_no=1, planned_cap=60000, status='open'),
        CycleTranche(tranche_no=2, planned_cap=40000, status='closed'),
    ]
    db.session.add(cycle)
    db.session.flush()
    if grant_call:
        db.session.add(CycleGrantInclusion(cycle_id=cycle.id, grant_call_id=grant_call.id, amount_included=100000))
    for state_name, amount in [("Khartoum", 35000), ("Al Jazirah", 15000)]:
        db.session.add(CycleStateAllocation(cycle_id=cycle.id, state_name=state_name, amount=amount, decision_no=1))
    db.session.commit()
    print("✓ Created cycle with 2 tranches and 2 state allocations")

def seed_projects():
    print("\nSeeding emergency rooms and workplans...")
    if Project.query.count() > 0:
        print("  Skipping - workplans already exist")
        return

    rooms = [
        EmergencyRoom(err_code="KH-BAH-01", name="Bahri ERR", name_ar="غرفة طوارئ بحري", state="Khartoum"),
        EmergencyRoom(err_code="JZ-MAD-01", name="Madani ERR", name_ar="غرفة طوارئ مدني", state="Al Jazirah"),
    ]
    db.session.add_all(rooms)
    db.session.flush()

    grant_call = GrantCall.query.filter_by(shortname="P2H-EC25").first()
    cycle = FundingCycle.query.first()
    workplans = [
        (rooms[0], "Bahri", STATUS_PENDING, FUNDING_UNASSIGNED, [("Community kitchen", 4000), ("Water trucking", 2500)]),
        (rooms[0], "Shambat", STATUS_PENDING, FUNDING_ALLOCATED, [("Medical supplies", 6000)]),
        (rooms[1], "Wad Madani", STATUS_APPROVED, FUNDING_COMMITTED, [("Shelter kits", 8000), ("Hygiene kits", 1500)]),
    ]
    for room, locality, status, funding_status, expenses in workplans:
        project = Project(
            err_id=room.err_code,
            emergency_room_id=room.id,
            state=room.state,
            locality=locality,
            status=status,
            funding_status=funding_status,
            expenses=[{"activity": name, "total_cost": cost} for name, cost in expenses],
            planned_activities=[{"activity": name, "planned_activity_cost": cost} for name, cost in expenses],
            project_objectives="Meet urgent needs of displaced families",
            intended_beneficiaries="Displaced households and host communities",
            banking_details="Bank of Khartoum - account 000123",
        )
        if funding_status != FUNDING_UNASSIGNED and grant_call:
            project.grant_call_id = grant_call.id
            project.donor_id = grant_call.donor_id
            project.funding_cycle_id = cycle.id if cycle else None
        db.session.add(project)

    db.session.add(HistoricalActivity(err_code="KH-BAH-01", err_name="Bahri ERR", state="Khartoum",
                                      serial_number="LCC-P2H-KH-0624-0001-001", usd=5000, project_donor="P2H"))
    db.session.commit()
    print(f"✓ Created {len(rooms)} emergency rooms, {len(workplans)} workplans and 1 historical activity")

def seed_demo():
    """Seed every demo table; tables that already hold data are left alone"""
    seed_users()
    seed_donors()
    seed_cycle()
    seed_projects()

def main():
    """Main seeding function"""
    print("=" * 60)
    print("F-System Demo Data Seeding Script")
    print("=" * 60)

    with app.app_context():
        db.create_all()
        ensure_seed_data()
        seed_demo()

    print("\n" + "=" * 60)
    print("✓ Demo data seeding complete!")
    print("=" * 60)
    print("\nDemo Login Credentials:")
    print("-" * 60)
    for email, _, password, role, _ in DEMO_USERS:
        print(f"{role:<12} {email} / {password}")
    print("=" * 60)

if __name__ == "__main__":
    main()
