import argparse
import logging

from sqlalchemy import select

from tabapp.db import SessionLocal, engine
from tabapp.models import Base, Item, ItemVariant, Location, Shop, User, UserRole

logger = logging.getLogger(__name__)


def create_schema() -> None:
    Base.metadata.create_all(engine)


def drop_schema() -> None:
    Base.metadata.drop_all(engine)


def seed() -> None:
    with SessionLocal() as db:
        admin = db.execute(select(User).where(User.email == 'admin@example.com')).scalar_one_or_none()
        if not admin:
            db.add(User(email='admin@example.com', name='Admin', role=UserRole.ADMIN, active=True))

        owner = db.execute(select(User).where(User.email == 'owner@example.com')).scalar_one_or_none()
        if not owner:
            owner = User(email='owner@example.com', name='Shop Owner', role=UserRole.USER, active=True)
            db.add(owner)
            db.flush()

        shop = db.execute(select(Shop).where(Shop.name == 'Campus Cafe')).scalar_one_or_none()
        if not shop:
            shop = Shop(owner_id=owner.id, name='Campus Cafe')
            db.add(shop)
            db.flush()
            db.add_all([Location(shop_id=shop.id, name='Main Hall'), Location(shop_id=shop.id, name='Library')])

            coffee = Item(shop_id=shop.id, name='Coffee', base_price=2)
            bagel = Item(shop_id=shop.id, name='Bagel', base_price=3)
            db.add_all([coffee, bagel])
            db.flush()
            db.add_all(
                [
                    ItemVariant(shop_id=shop.id, item_id=coffee.id, name='Oat milk', price=1),
                    ItemVariant(shop_id=shop.id, item_id=bagel.id, name='Cream cheese', price=1),
                ]
            )

        db.commit()


def main() -> None:
    parser = argparse.ArgumentParser(description='Manage the tab database schema.')
    parser.add_argument('command', choices=['create', 'drop', 'seed'])
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)

    if args.command == 'create':
        create_schema()
    elif args.command == 'drop':
        drop_schema()
    else:
        create_schema()
        seed()
    logger.info('Database %s complete', args.command)


if __name__ == '__main__':
    main()
