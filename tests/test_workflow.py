from datetime import datetime
from types import SimpleNamespace

import pytest

from errors import InvalidState
from workflow import apply_status_change, apply_updates

TODO = SimpleNamespace(id=1, name='To Do', type='Task', is_final=False, is_active=True)
DONE = SimpleNamespace(id=2, name='Done', type='Task', is_final=True, is_active=True)
ACTIVE = SimpleNamespace(id=3, name='Active', type='Project', is_final=False, is_active=True)
CLOSED = SimpleNamespace(id=4, name='Closed', type='Project', is_final=True, is_active=True)
RETIRED = SimpleNamespace(id=5, name='Retired', type='Task', is_final=False, is_active=False)

STATES = {s.id: s for s in [TODO, DONE, ACTIVE, CLOSED, RETIRED]}


def lookup(state_id, state_type):
    return STATES.get(state_id)


class FakeTask(SimpleNamespace):
    STATE_TYPE = 'Task'
    TRACKS_COMPLETION = True


class FakeProject(SimpleNamespace):
    STATE_TYPE = 'Project'
    TRACKS_COMPLETION = False


class TestApplyStatusChange:
    def test_entering_final_state_sets_completed_at(self):
        now = datetime(2024, 5, 1, 12, 0)
        task = FakeTask(status_id=TODO.id, completed_at=None)

        state, updates = apply_status_change(task, DONE.id, lookup_state=lookup, now=now)

        assert state is DONE
        assert updates == {'status_id': DONE.id, 'completed_at': now}

    def test_repeated_final_state_keeps_first_completion_time(self):
        first = datetime(2024, 5, 1, 12, 0)
        task = FakeTask(status_id=DONE.id, completed_at=first)

        _, updates = apply_status_change(task, DONE.id, lookup_state=lookup, now=datetime(2024, 6, 1))
        apply_updates(task, updates)

        assert 'completed_at' not in updates
        assert task.completed_at == first

    def test_leaving_final_state_clears_completed_at(self):
        task = FakeTask(status_id=DONE.id, completed_at=datetime(2024, 5, 1))

        _, updates = apply_status_change(task, TODO.id, lookup_state=lookup)

        assert updates == {'status_id': TODO.id, 'completed_at': None}

    def test_non_final_to_non_final_leaves_completed_at_alone(self):
        task = FakeTask(status_id=TODO.id, completed_at=None)
        _, updates = apply_status_change(task, TODO.id, lookup_state=lookup)
        assert updates == {'status_id': TODO.id}

    def test_project_does_not_track_completion(self):
        project = FakeProject(status_id=ACTIVE.id)
        _, updates = apply_status_change(project, CLOSED.id, lookup_state=lookup)
        assert updates == {'status_id': CLOSED.id}

    @pytest.mark.parametrize('state_id', [ACTIVE.id, RETIRED.id, 999, None])
    def test_wrong_type_inactive_or_unknown_state_is_rejected(self, state_id):
        task = FakeTask(status_id=TODO.id, completed_at=None)
        with pytest.raises(InvalidState):
            apply_status_change(task, state_id, lookup_state=lookup)

    def test_task_state_is_rejected_for_project(self):
        project = FakeProject(status_id=ACTIVE.id)
        with pytest.raises(InvalidState) as exc_info:
            apply_status_change(project, DONE.id, lookup_state=lookup)
        assert exc_info.value.message == 'Invalid state for projects'


class TestApplyUpdates:
    def test_only_changed_fields_are_reported(self):
        task = FakeTask(status_id=TODO.id, completed_at=None, title='Old')
        now = datetime(2024, 5, 1, 12, 0)

        changes = apply_updates(task, {'status_id': DONE.id, 'completed_at': now, 'title': 'Old'})

        assert changes == {
            'status_id': {'old': TODO.id, 'new': DONE.id},
            'completed_at': {'old': None, 'new': now.isoformat()}
        }
        assert task.status_id == DONE.id
        assert task.completed_at == now
