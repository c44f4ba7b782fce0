"""Seed database with demo data."""
from fielddesk.auth import get_password_hash
from fielddesk.database import Base, SessionLocal, engine
from fielddesk.models import Technician, User
from fielddesk.use_cases.ticket_lifecycle import create_ticket_use_case
import uuid


def seed():
    """Seed database with demo data."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()

    try:
        if db.query(User).filter(User.username == "admin").first():
            print("⏭️ Demo data already present, nothing to do")
            return

        users_data = [
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000101'),
                'username': 'admin',
                'password': 'admin123',
                'name': 'Admin Kantor',
                'role': 'admin',
                'phone': '6281200000101',
            },
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000102'),
                'username': 'cs',
                'password': 'cs123456',
                'name': 'Customer Service',
                'role': 'user',
                'phone': None,
            },
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000103'),
                'username': 'bot',
                'password': None,
                'name': 'WhatsApp Intake Bot',
                'role': 'system',
                'phone': None,
            },
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000104'),
                'username': 'budi',
                'password': 'budi1234',
                'name': 'Budi Santoso',
                'role': 'technician',
                'phone': '6281200000104',
            },
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000105'),
                'username': 'agus',
                'password': 'agus1234',
                'name': 'Agus Pratama',
                'role': 'technician',
                'phone': '6281200000105',
            },
        ]

        users = {}
        for user_data in users_data:
            password = user_data.pop('password')
            user = User(
                password_hash=get_password_hash(password) if password else None,
                **user_data
            )
            db.add(user)
            users[user.username] = user
        db.flush()

        for username in ("budi", "agus"):
            user = users[username]
            db.add(Technician(user_id=user.id, name=user.name, phone=user.phone))
        db.commit()
        print(f"✅ Created {len(users)} users and 2 technicians")

        ticket = create_ticket_use_case(
            db=db,
            current_user=users["cs"],
            category="INSTALL",
            address="Jl. Merdeka No. 10, Bandung",
            details="Paket 20 Mbps",
            customer_name="Siti Aminah",
            customer_phone="081234567890",
        )
        print(f"✅ Created demo ticket {ticket.ticket_number} (approval {ticket.approval})")

    except Exception as e:
        db.rollback()
        print(f"❌ Error seeding data: {e}")
        raise

    finally:
        db.close()


if __name__ == "__main__":
    seed()
