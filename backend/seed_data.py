"""Seed database with demo staff accounts and the default alert rules."""
import uuid

from trustauth.database import SessionLocal
from trustauth.models import AuditChainHead, User
from trustauth.use_cases.alert_rules import ensure_default_alert_rules


def seed():
    """Seed database with demo data. Safe to run more than once."""
    db = SessionLocal()

    try:
        users_data = [
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000101'),
                'phone_e164': '+919000000001',
                'display_name': 'Admin',
                'role': 'admin',
            },
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000102'),
                'phone_e164': '+919000000002',
                'display_name': 'Operations Manager',
                'role': 'manager',
            },
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000103'),
                'phone_e164': '+919000000003',
                'display_name': 'Field Technician',
                'role': 'technician',
            },
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000104'),
                'phone_e164': '+919000000004',
                'display_name': 'Transporter',
                'role': 'transporter',
            },
        ]

        created_users = 0
        for user_data in users_data:
            if db.query(User).filter(User.phone_e164 == user_data['phone_e164']).first():
                continue
            db.add(User(is_active=True, **user_data))
            created_users += 1

        if db.query(AuditChainHead).filter(AuditChainHead.id == 1).first() is None:
            db.add(AuditChainHead(id=1, last_seq=0, last_hash=None))

        rules = ensure_default_alert_rules(db)
        db.commit()

        print(f"✅ Seeded {created_users} users and {len(rules)} alert rules")
        print("\n📝 Demo logins (OTP via /api/v1/auth/otp/request):")
        for user_data in users_data:
            print(f"  {user_data['role']:<12} {user_data['phone_e164']}")

    except Exception as e:
        db.rollback()
        print(f"❌ Error seeding database: {e}")
        raise

    finally:
        db.close()


if __name__ == "__main__":
    seed()
