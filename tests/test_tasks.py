from datetime import datetime, timedelta

from models import db, Task, Notification


def task_payload(state, **overrides):
    payload = {
        'title': 'Design login screen',
        'description': 'Wireframes and final mockups',
        'status_id': state.id
    }
    payload.update(overrides)
    return payload


class TestCreateTask:
    def test_member_creates_task(self, client, owner, member, make_project, state_named, api_headers):
        project = make_project(owner, members=[member])

        response = client.post(f'/projects/{project.id}/tasks', json=task_payload(state_named('To Do')),
                               headers=api_headers(member))

        body = response.get_json()['task']
        assert response.status_code == 201
        assert body['created_by']['id'] == member.id
        assert body['assigned_to'] is None
        assert body['completed_at'] is None

    def test_project_state_is_invalid_for_tasks(self, client, owner, make_project, state_named, api_headers):
        project = make_project(owner)

        response = client.post(f'/projects/{project.id}/tasks', json=task_payload(state_named('Active')),
                               headers=api_headers(owner))

        assert response.status_code == 400
        assert response.get_json()['error'] == 'invalid_state'
        assert Task.query.count() == 0

    def test_assignee_must_belong_to_project(self, client, owner, outsider, make_project, state_named,
                                             api_headers):
        project = make_project(owner)

        response = client.post(f'/projects/{project.id}/tasks',
                               json=task_payload(state_named('To Do'), assigned_to=outsider.id),
                               headers=api_headers(owner))

        assert response.status_code == 400
        assert response.get_json()['error'] == 'invalid_assignee'
        assert Task.query.count() == 0

    def test_initial_final_state_sets_completed_at(self, client, owner, make_project, state_named, api_headers):
        project = make_project(owner)

        response = client.post(f'/projects/{project.id}/tasks', json=task_payload(state_named('Done')),
                               headers=api_headers(owner))

        assert response.get_json()['task']['completed_at'] is not None

    def test_assigning_on_create_notifies(self, client, owner, member, make_project, state_named, api_headers):
        project = make_project(owner, members=[member])

        response = client.post(f'/projects/{project.id}/tasks',
                               json=task_payload(state_named('To Do'), assigned_to=member.id),
                               headers=api_headers(owner))

        assert response.status_code == 201
        assert Notification.query.filter_by(user_id=member.id, type='task_assigned').count() == 1

    def test_outsider_cannot_create(self, client, owner, outsider, make_project, state_named, api_headers):
        project = make_project(owner)

        response = client.post(f'/projects/{project.id}/tasks', json=task_payload(state_named('To Do')),
                               headers=api_headers(outsider))

        assert response.status_code == 404


class TestReadTasks:
    def test_list_with_filters(self, client, owner, member, make_project, make_task, state_named, api_headers):
        project = make_project(owner, members=[member])
        make_task(project, owner, title='Mine', assignee=member)
        make_task(project, owner, title='Unassigned')
        make_task(project, owner, title='Finished', status='Done')

        headers = api_headers(owner)
        all_tasks = client.get(f'/projects/{project.id}/tasks', headers=headers).get_json()
        assigned = client.get(f'/projects/{project.id}/tasks?assigned_to={member.id}', headers=headers).get_json()
        done = client.get(f'/projects/{project.id}/tasks?status_id={state_named("Done").id}',
                          headers=headers).get_json()

        assert all_tasks['total'] == 3
        assert [t['title'] for t in assigned['tasks']] == ['Mine']
        assert [t['title'] for t in done['tasks']] == ['Finished']

    def test_my_tasks_ordering(self, client, owner, member, make_project, make_task, api_headers):
        project = make_project(owner, members=[member])
        now = datetime.utcnow()
        make_task(project, owner, title='No due date', assignee=member)
        make_task(project, owner, title='Later', assignee=member, due_date=now + timedelta(days=5))
        make_task(project, owner, title='Sooner', assignee=member, due_date=now + timedelta(days=1))
        make_task(project, owner, title='Not mine')

        body = client.get('/tasks/my', headers=api_headers(member)).get_json()

        assert [t['title'] for t in body['tasks']] == ['Sooner', 'Later', 'No due date']

    def test_my_tasks_skips_deleted_projects(self, client, owner, member, make_project, make_task, api_headers):
        project = make_project(owner, members=[member])
        make_task(project, owner, assignee=member)
        project.is_active = False
        db.session.commit()

        body = client.get('/tasks/my', headers=api_headers(member)).get_json()

        assert body['total'] == 0

    def test_creator_outside_project_can_still_read(self, client, owner, member, make_project, make_task,
                                                    api_headers):
        project = make_project(owner, members=[member])
        task = make_task(project, member)
        client.delete(f'/projects/{project.id}/members/{member.id}', headers=api_headers(owner))

        response = client.get(f'/tasks/{task.id}', headers=api_headers(member))

        assert response.status_code == 200

    def test_unknown_task(self, client, owner, api_headers):
        response = client.get('/tasks/999', headers=api_headers(owner))
        assert response.status_code == 404


class TestUpdateAndDelete:
    def test_assignee_updates(self, client, owner, member, make_project, make_task, api_headers):
        project = make_project(owner, members=[member])
        task = make_task(project, owner, assignee=member)

        response = client.patch(f'/tasks/{task.id}', json={'actual_hours': 3.5}, headers=api_headers(member))

        assert response.status_code == 200
        assert response.get_json()['task']['actual_hours'] == 3.5

    def test_plain_member_cannot_update(self, client, owner, member, make_project, make_task, api_headers):
        project = make_project(owner, members=[member])
        task = make_task(project, owner)

        response = client.patch(f'/tasks/{task.id}', json={'title': 'Nope'}, headers=api_headers(member))

        assert response.status_code == 403

    def test_status_cannot_be_changed_through_update(self, client, owner, make_project, make_task,
                                                     state_named, api_headers):
        project = make_project(owner)
        task = make_task(project, owner)

        response = client.patch(f'/tasks/{task.id}', json={'status_id': state_named('Done').id},
                                headers=api_headers(owner))

        assert response.status_code == 400

    def test_assignee_cannot_delete(self, client, owner, member, make_project, make_task, api_headers):
        project = make_project(owner, members=[member])
        task = make_task(project, owner, assignee=member)

        response = client.delete(f'/tasks/{task.id}', headers=api_headers(member))

        assert response.status_code == 403

    def test_creator_soft_deletes(self, client, owner, member, make_project, make_task, api_headers):
        project = make_project(owner, members=[member])
        task = make_task(project, member)

        assert client.delete(f'/tasks/{task.id}', headers=api_headers(member)).status_code == 200
        assert client.get(f'/tasks/{task.id}', headers=api_headers(member)).status_code == 404
        assert db.session.get(Task, task.id).is_active is False


class TestTaskStatus:
    def test_completed_at_follows_final_state(self, client, owner, member, make_project, make_task,
                                              state_named, api_headers):
        project = make_project(owner, members=[member])
        task = make_task(project, owner)
        headers = api_headers(member)
        url = f'/tasks/{task.id}/status'

        first = client.patch(url, json={'status_id': state_named('Done').id}, headers=headers).get_json()
        completed_at = first['task']['completed_at']
        assert completed_at is not None

        again = client.patch(url, json={'status_id': state_named('Done').id}, headers=headers).get_json()
        assert again['task']['completed_at'] == completed_at

        reopened = client.patch(url, json={'status_id': state_named('In Progress').id}, headers=headers).get_json()
        assert reopened['task']['completed_at'] is None
        assert reopened['task']['status']['name'] == 'In Progress'

    def test_inactive_state_is_rejected(self, client, owner, make_project, make_task, state_named, api_headers):
        project = make_project(owner)
        task = make_task(project, owner)
        done = state_named('Done')
        done.is_active = False
        db.session.commit()

        response = client.patch(f'/tasks/{task.id}/status', json={'status_id': done.id},
                                headers=api_headers(owner))

        assert response.status_code == 400
        assert response.get_json()['error'] == 'invalid_state'


class TestAssignment:
    def test_member_cannot_assign(self, client, owner, member, make_project, make_task, api_headers):
        project = make_project(owner, members=[member])
        task = make_task(project, owner)

        response = client.patch(f'/tasks/{task.id}/assign', json={'assigned_to': member.id},
                                headers=api_headers(member))

        assert response.status_code == 403

    def test_unassign_with_null(self, client, owner, member, make_project, make_task, api_headers):
        project = make_project(owner, members=[member])
        task = make_task(project, owner, assignee=member)

        response = client.patch(f'/tasks/{task.id}/assign', json={'assigned_to': None}, headers=api_headers(owner))

        assert response.status_code == 200
        assert response.get_json()['task']['assigned_to'] is None

    def test_owner_can_assign_to_self_without_notification(self, client, owner, make_project, make_task,
                                                           api_headers):
        project = make_project(owner)
        task = make_task(project, owner)

        response = client.patch(f'/tasks/{task.id}/assign', json={'assigned_to': owner.id},
                                headers=api_headers(owner))

        assert response.status_code == 200
        assert Notification.query.count() == 0


def test_membership_assignment_and_completion_flow(client, owner, member, make_project, make_task,
                                                   role_named, state_named, api_headers):
    """owner 建立任務 -> 外人看不到也不能被指派 -> 加入成員後指派 -> 被指派者完成任務"""
    project = make_project(owner)
    task = make_task(project, owner)
    owner_headers = api_headers(owner)
    member_headers = api_headers(member)

    assert client.get(f'/tasks/{task.id}', headers=member_headers).status_code == 403

    response = client.patch(f'/tasks/{task.id}/assign', json={'assigned_to': member.id}, headers=owner_headers)
    assert response.status_code == 400
    assert response.get_json()['error'] == 'invalid_assignee'
    assert db.session.get(Task, task.id).assigned_to is None

    response = client.post(f'/projects/{project.id}/members',
                           json={'user_id': member.id, 'role_id': role_named('Member').id},
                           headers=owner_headers)
    assert response.status_code == 201
    assert len(response.get_json()['project']['members']) == 1

    response = client.patch(f'/tasks/{task.id}/assign', json={'assigned_to': member.id}, headers=owner_headers)
    assert response.status_code == 200
    assert response.get_json()['task']['assigned_to']['id'] == member.id

    response = client.patch(f'/tasks/{task.id}/status', json={'status_id': state_named('Done').id},
                            headers=member_headers)
    assert response.status_code == 200
    assert response.get_json()['task']['completed_at'] is not None

    inbox = client.get('/notifications?unread_only=true', headers=member_headers).get_json()
    assert [n['type'] for n in inbox['notifications']] == ['task_assigned', 'member_added']
    assert inbox['unread_count'] == 2
