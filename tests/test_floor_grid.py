import pytest
from fundraising.floor_grid import FloorGridAllocator
from fundraising.models import CustomAmountTracking, FloorGridCell, Pledge


@pytest.fixture
def pledge(db_session, donor):
    pledge = Pledge(donor_id=donor.id, donor_name=donor.name, amount=300, type='pledge', status='approved')
    db_session.add(pledge)
    db_session.commit()
    return pledge


def _claimed(db_session):
    return [
        (cell.cell_id, cell.status)
        for cell in db_session.query(FloorGridCell).order_by(FloorGridCell.rectangle_id, FloorGridCell.position)
        if cell.status != 'available'
    ]


def test_populate_full_floor_plan(db_session):
    allocator = FloorGridAllocator(db_session)

    assert allocator.populate() == 513
    first = db_session.query(FloorGridCell).filter_by(cell_id='A-1').one()
    assert (first.grid_x, first.grid_y, first.area_size) == (1, 5, 0.25)
    assert allocator.get_allocation_stats()['total_possible_area'] == 128.25


def test_populate_refuses_to_overwrite(db_session, floor_grid):
    with pytest.raises(ValueError, match="already populated"):
        floor_grid.populate()
    assert floor_grid.populate({'Z': {'cols': (1, 2), 'rows': (1, 1)}}, reset=True) == 2
    assert db_session.query(FloorGridCell).count() == 2


@pytest.mark.parametrize('amount, package_index, expected', [
    (250, None, 2),
    (99.99, None, 0),
    (400, 0, 4),
    (50, 2, 1),
    (800, 1, 8),
    (400, 3, 4),
])
def test_blocks_for_amount(packages, amount, package_index, expected):
    package = packages[package_index] if package_index is not None else None
    assert FloorGridAllocator.blocks_for_amount(amount, package) == expected


def test_package_allocation_fills_in_order(db_session, floor_grid, packages, pledge):
    result = floor_grid.allocate(200, 'Abebe Kebede', 'pledged', pledge_id=pledge.id, package_id=packages[1].id)

    assert result['success'] is True
    assert result['type'] == 'package'
    assert result['allocated_cells'] == ['A-1', 'A-2']
    assert result['area_allocated'] == 0.5
    cell = db_session.query(FloorGridCell).filter_by(cell_id='A-2').one()
    assert (cell.donor_name, cell.amount, cell.pledge_id) == ('Abebe Kebede', 100, pledge.id)
    assert db_session.query(CustomAmountTracking).count() == 0


def test_custom_amounts_accumulate_per_donor(db_session, floor_grid, donor):
    first = floor_grid.allocate(60, donor.name, 'paid', donor_id=donor.id)
    assert first['type'] == 'accumulated'
    assert first['allocated_cells'] == []
    assert first['remaining_amount'] == 60

    second = floor_grid.allocate(170, donor.name, 'paid', donor_id=donor.id)
    assert second['type'] == 'allocated'
    assert second['allocated_cells'] == ['A-1', 'A-2']
    assert second['remaining_amount'] == 30

    tracker = db_session.query(CustomAmountTracking).filter_by(donor_id=donor.id).one()
    assert (tracker.total_amount, tracker.allocated_amount, tracker.remaining_amount) == (230, 200, 30)
    assert floor_grid.get_allocation_stats()['custom_amount_waiting'] == 30


def test_anonymous_donations_tracked_by_name(db_session, floor_grid):
    floor_grid.allocate(50, None, 'paid')
    floor_grid.allocate(50, None, 'paid')

    assert _claimed(db_session) == [('A-1', 'paid')]
    assert db_session.query(CustomAmountTracking).filter_by(donor_name='Anonymous').one().remaining_amount == 0


def test_full_floor_claims_nothing(db_session, floor_grid, packages):
    result = floor_grid.allocate(1100, 'Big Giver', 'paid')

    assert result['success'] is False
    assert result['error'] == 'Not enough space available on the floor plan'
    assert _claimed(db_session) == []


def test_fill_order_spills_into_next_rectangle(db_session, floor_grid):
    floor_grid.allocate(900, 'Giver', 'paid')

    assert _claimed(db_session)[-1] == ('B-1', 'paid')
    assert floor_grid.get_allocation_stats()['available_cells'] == 1


def test_release_frees_cells_and_custom_total(db_session, floor_grid, donor, pledge):
    floor_grid.allocate(250, donor.name, 'pledged', pledge_id=pledge.id, donor_id=donor.id)

    result = floor_grid.release(250, donor.name, pledge_id=pledge.id, donor_id=donor.id)

    assert result['deallocated_cells'] == ['A-1', 'A-2']
    assert result['area_deallocated'] == 0.5
    assert _claimed(db_session) == []
    cell = db_session.query(FloorGridCell).filter_by(cell_id='A-1').one()
    assert (cell.pledge_id, cell.donor_name, cell.amount, cell.assigned_date) == (None, None, None, None)
    tracker = db_session.query(CustomAmountTracking).filter_by(donor_id=donor.id).one()
    assert (tracker.total_amount, tracker.allocated_amount, tracker.remaining_amount) == (0, 0, 0)


def test_release_of_donation_still_accumulating(db_session, floor_grid, donor, pledge):
    floor_grid.allocate(60, donor.name, 'pledged', pledge_id=pledge.id, donor_id=donor.id)

    result = floor_grid.release(60, donor.name, pledge_id=pledge.id, donor_id=donor.id)

    assert result['deallocated_cells'] == []
    assert db_session.query(CustomAmountTracking).filter_by(donor_id=donor.id).one().remaining_amount == 0


def test_release_needs_a_donation(floor_grid):
    with pytest.raises(ValueError):
        floor_grid.release(100, 'Someone')


def test_sync_marks_cells_paid_up_to_installments(db_session, floor_grid, donor, pledge):
    # donor has pledged 400 and paid off 100 of it
    floor_grid.allocate(300, donor.name, 'pledged', pledge_id=pledge.id, donor_id=donor.id)

    assert floor_grid.sync_donor_cells(donor.id) == 1
    assert _claimed(db_session) == [('A-1', 'paid'), ('A-2', 'pledged'), ('A-3', 'pledged')]

    donor.balance = 100
    assert floor_grid.sync_donor_cells(donor.id) == 3

    donor.balance = 400
    assert floor_grid.sync_donor_cells(donor.id) == 0
    assert {status for _, status in _claimed(db_session)} == {'pledged'}


def test_grid_status_lists_claimed_cells(db_session, floor_grid, packages):
    db_session.query(FloorGridCell).filter_by(cell_id='B-2').one().status = 'blocked'
    floor_grid.allocate(100, 'Giver', 'paid', package_id=packages[2].id)

    status = floor_grid.get_grid_status()

    assert [cell['cell_id'] for cell in status] == ['A-1', 'B-2']
    assert status[0]['donor_name'] == 'Giver'
    assert status[0]['assigned_date'] is not None
    stats = floor_grid.get_allocation_stats()
    assert stats['total_cells'] == 10
    assert stats['paid_cells'] == 1
    assert stats['blocked_cells'] == 1
    assert stats['available_cells'] == 8
    assert stats['total_allocated_area'] == 0.25
