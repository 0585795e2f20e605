"""
Floor plan allocation.

The church floor is divided into 0.5m x 0.5m cells of 0.25 m² each and £100
buys one cell. Approved donations claim cells in a fixed fill order, rectangle
by rectangle and cell by cell, so the plan fills without gaps. Donations made
without a square-metre package are pooled per donor until they add up to a
whole cell.
"""

import logging
import math
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import CustomAmountTracking, DonationPackage, Donor, FloorGridCell, Pledge

logger = logging.getLogger(__name__)

CELL_AREA = 0.25
CELL_PRICE = 100

# Rectangles of the floor plan in 0.5m grid units, bounds inclusive
FLOOR_LAYOUT = {
    'A': {'cols': (1, 9), 'rows': (5, 16)},
    'B': {'cols': (1, 3), 'rows': (17, 19)},
    'C': {'cols': (10, 11), 'rows': (9, 16)},
    'D': {'cols': (24, 33), 'rows': (5, 16)},
    'E': {'cols': (12, 23), 'rows': (7, 16)},
    'F': {'cols': (34, 38), 'rows': (2, 5)},
    'G': {'cols': (34, 41), 'rows': (6, 20)},
}

ALLOCATED_STATUSES = ('pledged', 'paid', 'blocked')


class FloorGridAllocator:
    """Claims and releases floor cells for approved donations; callers commit."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def populate(self, layout: Optional[Dict] = None, reset: bool = False) -> int:
        """Create every cell of the floor plan. Returns the number of cells."""
        layout = layout or FLOOR_LAYOUT
        existing = self.db.query(FloorGridCell).count()
        if existing and not reset:
            raise ValueError("Floor grid is already populated")

        try:
            if existing:
                self.db.query(FloorGridCell).delete()

            total = 0
            for rectangle_id, box in layout.items():
                position = 0
                for row in range(box['rows'][0], box['rows'][1] + 1):
                    for col in range(box['cols'][0], box['cols'][1] + 1):
                        position += 1
                        self.db.add(FloorGridCell(
                            cell_id=f'{rectangle_id}-{position}',
                            rectangle_id=rectangle_id,
                            position=position,
                            grid_x=col,
                            grid_y=row,
                            cell_type='0.5x0.5',
                            area_size=CELL_AREA,
                            status='available'
                        ))
                total += position

            self.db.commit()
            logger.info(f"Populated floor grid with {total} cells ({total * CELL_AREA} m²)")
            return total
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error populating floor grid: {str(e)}")
            raise

    @staticmethod
    def blocks_for_amount(amount: float, package: Optional[DonationPackage] = None) -> int:
        """Number of cells a donation is worth; a package is never worth less than its area."""
        if package is not None and package.sqm_meters:
            area = max(float(package.sqm_meters), math.floor(amount / CELL_PRICE) * CELL_AREA)
            return int(round(area / CELL_AREA))
        return int(math.floor(amount / CELL_PRICE))

    def _claim(self, blocks: int, amount: float, donor_name: str, status: str,
               pledge_id: Optional[int], payment_id: Optional[int]) -> Dict:
        if blocks <= 0:
            return {'success': True, 'message': 'No allocation needed for this amount.',
                    'allocated_cells': [], 'area_allocated': 0}

        cells = self.db.query(FloorGridCell).filter_by(status='available').order_by(
            FloorGridCell.rectangle_id, FloorGridCell.position
        ).limit(blocks).with_for_update().all()

        if len(cells) < blocks:
            logger.warning(f"Floor grid full: needed {blocks} cells, {len(cells)} available")
            return {'success': False, 'error': 'Not enough space available on the floor plan',
                    'allocated_cells': [], 'area_allocated': 0}

        now = datetime.utcnow()
        for cell in cells:
            cell.status = status
            cell.pledge_id = pledge_id
            cell.payment_id = payment_id
            cell.donor_name = donor_name
            cell.amount = round(amount / blocks, 2)
            cell.assigned_date = now
        self.db.flush()

        return {
            'success': True,
            'message': f'Allocated {blocks} grid cell(s).',
            'allocated_cells': [cell.cell_id for cell in cells],
            'area_allocated': blocks * CELL_AREA
        }

    def _tracker(self, donor_id: Optional[int], donor_name: str, create: bool = False):
        query = self.db.query(CustomAmountTracking)
        if donor_id:
            tracker = query.filter_by(donor_id=donor_id).first()
        else:
            tracker = query.filter_by(donor_id=None, donor_name=donor_name).first()

        if tracker is None and create:
            tracker = CustomAmountTracking(donor_id=donor_id, donor_name=donor_name, total_amount=0,
                                           allocated_amount=0, remaining_amount=0)
            self.db.add(tracker)
        return tracker

    @staticmethod
    def _uses_package(package: Optional[DonationPackage]) -> bool:
        return package is not None and bool(package.sqm_meters)

    def allocate(
        self,
        amount: float,
        donor_name: str,
        status: str,
        pledge_id: Optional[int] = None,
        payment_id: Optional[int] = None,
        package_id: Optional[int] = None,
        donor_id: Optional[int] = None
    ) -> Dict:
        """
        Claim cells for an approved pledge or payment.

        A square-metre package claims its area. Any other amount is added to
        the donor's running custom total and claims one cell per whole £100
        in it; the rest waits for the donor's next donation. A full floor is
        reported with success False and leaves nothing claimed.
        """
        donor_name = donor_name or 'Anonymous'
        package = self.db.get(DonationPackage, package_id) if package_id else None

        if self._uses_package(package):
            result = self._claim(self.blocks_for_amount(amount, package), amount, donor_name, status,
                                 pledge_id, payment_id)
            result['type'] = 'package'
            return result

        tracker = self._tracker(donor_id, donor_name, create=True)
        tracker.total_amount = round(float(tracker.total_amount or 0) + amount, 2)
        pool = float(tracker.remaining_amount or 0) + amount
        blocks = int(pool // CELL_PRICE)

        result = self._claim(blocks, blocks * CELL_PRICE, donor_name, status, pledge_id, payment_id)
        if blocks and result['success']:
            tracker.allocated_amount = round(float(tracker.allocated_amount or 0) + blocks * CELL_PRICE, 2)
            pool -= blocks * CELL_PRICE
        tracker.remaining_amount = round(pool, 2)
        self.db.flush()

        result['type'] = 'allocated' if result['allocated_cells'] else 'accumulated'
        result['remaining_amount'] = tracker.remaining_amount
        return result

    def release(
        self,
        amount: float,
        donor_name: str,
        pledge_id: Optional[int] = None,
        payment_id: Optional[int] = None,
        package_id: Optional[int] = None,
        donor_id: Optional[int] = None
    ) -> Dict:
        """Free the cells claimed for a donation that is being undone and take it out of the custom total."""
        if pledge_id is None and payment_id is None:
            raise ValueError("A pledge or payment is required to release cells")

        query = self.db.query(FloorGridCell).filter(FloorGridCell.status.in_(ALLOCATED_STATUSES))
        if pledge_id is not None:
            query = query.filter(FloorGridCell.pledge_id == pledge_id)
        else:
            query = query.filter(FloorGridCell.payment_id == payment_id)
        cells = query.order_by(FloorGridCell.rectangle_id, FloorGridCell.position).all()

        freed_value = round(sum(float(cell.amount or 0) for cell in cells), 2)
        for cell in cells:
            cell.status = 'available'
            cell.pledge_id = None
            cell.payment_id = None
            cell.donor_name = None
            cell.amount = None
            cell.assigned_date = None

        package = self.db.get(DonationPackage, package_id) if package_id else None
        if not self._uses_package(package):
            tracker = self._tracker(donor_id, donor_name or 'Anonymous')
            if tracker is not None:
                # cells completed by a later donation stay with that donation
                tracker.total_amount = max(0.0, round(float(tracker.total_amount or 0) - amount, 2))
                tracker.allocated_amount = max(0.0, round(float(tracker.allocated_amount or 0) - freed_value, 2))
                tracker.remaining_amount = max(
                    0.0, round(float(tracker.remaining_amount or 0) + freed_value - amount, 2))
        self.db.flush()

        return {
            'success': True,
            'deallocated_cells': [cell.cell_id for cell in cells],
            'area_deallocated': len(cells) * CELL_AREA
        }

    def sync_donor_cells(self, donor_id: int) -> int:
        """
        Mark a donor's pledged cells paid, in claim order, for as much as the
        donor has paid off in installments; the rest go back to pledged. Returns
        the number of paid cells.
        """
        donor = self.db.get(Donor, donor_id)
        if donor is None:
            return 0

        paid = float(donor.total_pledged or 0) - float(donor.balance or 0)

        cells = self.db.query(FloorGridCell).join(Pledge, FloorGridCell.pledge_id == Pledge.id).filter(
            Pledge.donor_id == donor_id,
            Pledge.type != 'paid',
            FloorGridCell.status.in_(('pledged', 'paid'))
        ).order_by(FloorGridCell.assigned_date, FloorGridCell.rectangle_id, FloorGridCell.position).all()

        paid_cells = 0
        for cell in cells:
            value = float(cell.amount or 0)
            if paid + 0.01 >= value:
                cell.status = 'paid'
                paid -= value
                paid_cells += 1
            else:
                cell.status = 'pledged'
        self.db.flush()
        return paid_cells

    def get_grid_status(self) -> List[Dict]:
        """Claimed cells for the floor plan display."""
        cells = self.db.query(FloorGridCell).filter(FloorGridCell.status.in_(ALLOCATED_STATUSES)).order_by(
            FloorGridCell.rectangle_id, FloorGridCell.position
        ).all()
        return [
            {
                'cell_id': cell.cell_id,
                'rectangle_id': cell.rectangle_id,
                'grid_x': cell.grid_x,
                'grid_y': cell.grid_y,
                'status': cell.status,
                'donor_name': cell.donor_name,
                'amount': cell.amount,
                'assigned_date': cell.assigned_date.isoformat() if cell.assigned_date else None
            }
            for cell in cells
        ]

    def get_allocation_stats(self) -> Dict:
        counts = dict(self.db.query(FloorGridCell.status, func.count(FloorGridCell.id)).group_by(
            FloorGridCell.status
        ).all())
        total = sum(counts.values())
        allocated = counts.get('pledged', 0) + counts.get('paid', 0)
        custom = self.db.query(
            func.coalesce(func.sum(CustomAmountTracking.remaining_amount), 0),
            func.count(CustomAmountTracking.id)
        ).one()
        return {
            'total_cells': total,
            'pledged_cells': counts.get('pledged', 0),
            'paid_cells': counts.get('paid', 0),
            'blocked_cells': counts.get('blocked', 0),
            'available_cells': counts.get('available', 0),
            'total_allocated_area': allocated * CELL_AREA,
            'total_possible_area': total * CELL_AREA,
            'custom_amount_waiting': float(custom[0] or 0),
            'custom_amount_donors': custom[1]
        }
