import sys
from datetime import date, timedelta

from app import app, db, ProductionRecord, BatchRecord, new_id, relink_batches
from metrics import AVIARY_IDS

DEMO_BATCHES = {
    '1': ('L-2024-01', 22),
    '2': ('L-2024-02', 30),
    '3': ('L-2024-03', 45),
    '4': ('L-2024-04', 60),
}

def seed_demo_data(days=60):
    """Two months of plausible records for every aviary."""
    start = date.today() - timedelta(days=days)

    for aviary_id in AVIARY_IDS:
        batch_id, age = DEMO_BATCHES[aviary_id]
        db.session.add(BatchRecord(
            id=new_id(), date=start, aviary_id=aviary_id, batch_id=batch_id,
            age_weeks=age, weight=1650 + age * 5, uniformity=82.0, feathering='Bom',
        ))

        birds = 5000
        for i in range(days):
            mortality = 2 if i % 3 else 1
            birds -= mortality
            clean = int(birds * 0.82)
            rec = ProductionRecord(
                id=new_id(), date=start + timedelta(days=i), aviary_id=aviary_id,
                live_birds=birds, clean_eggs=clean, dirty_eggs=int(birds * 0.04),
                cracked_eggs=int(birds * 0.01), floor_eggs=int(birds * 0.02),
                egg_weight_avg=58.5 + (i % 5) * 0.3, bird_weight_avg=1800 + i,
                mortality=mortality,
            )
            rec.apply_metrics()
            db.session.add(rec)

    db.session.flush()
    relink_batches()
    print(f"Seeded {days} days of demo data for {len(AVIARY_IDS)} aviaries.")

def init_db(demo=False):
    with app.app_context():
        # Schema is normally managed by Flask-Migrate; this covers fresh installs
        db.create_all()

        if demo and ProductionRecord.query.count() == 0:
            seed_demo_data()

        db.session.commit()
        print("Database initialized.")

if __name__ == "__main__":
    init_db(demo='--demo' in sys.argv)
