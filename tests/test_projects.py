import projects
from models import db, Project, ActivityLog, Notification


def project_payload(category, state, **overrides):
    payload = {
        'name': 'Mobile App',
        'description': 'Ship the first mobile release',
        'category_id': category.id,
        'status_id': state.id
    }
    payload.update(overrides)
    return payload


class TestCreateProject:
    def test_owner_is_creator_and_members_start_empty(self, client, owner, category, state_named, api_headers):
        response = client.post('/projects', json=project_payload(category, state_named('Planning')),
                               headers=api_headers(owner))

        body = response.get_json()['project']
        assert response.status_code == 201
        assert body['owner']['id'] == owner.id
        assert body['members'] == []
        assert body['status']['name'] == 'Planning'
        assert body['priority'] == 'Medium'
        assert body['my_role'] == 'owner'
        assert ActivityLog.query.filter_by(action='create_project').count() == 1

    def test_tags_keep_order_without_duplicates(self, client, owner, category, state_named, api_headers):
        payload = project_payload(category, state_named('Active'), tags=['web', 'q3', 'web'])

        response = client.post('/projects', json=payload, headers=api_headers(owner))

        assert response.get_json()['project']['tags'] == ['web', 'q3']

    def test_missing_description(self, client, owner, category, state_named, api_headers):
        payload = project_payload(category, state_named('Planning'))
        del payload['description']

        response = client.post('/projects', json=payload, headers=api_headers(owner))

        assert response.status_code == 400
        assert response.get_json()['error'] == 'invalid_input'

    def test_task_state_is_invalid_for_projects(self, client, owner, category, state_named, api_headers):
        response = client.post('/projects', json=project_payload(category, state_named('To Do')),
                               headers=api_headers(owner))

        assert response.status_code == 400
        assert response.get_json()['error'] == 'invalid_state'
        assert Project.query.count() == 0

    def test_malformed_status_id(self, client, owner, category, api_headers):
        payload = {'name': 'X', 'description': 'Y', 'category_id': category.id, 'status_id': 'abc'}

        response = client.post('/projects', json=payload, headers=api_headers(owner))

        assert response.status_code == 400
        assert response.get_json()['error'] == 'invalid_input'

    def test_unknown_category(self, client, owner, state_named, api_headers):
        payload = {'name': 'X', 'description': 'Y', 'category_id': 999, 'status_id': state_named('Active').id}

        response = client.post('/projects', json=payload, headers=api_headers(owner))

        assert response.status_code == 400
        assert response.get_json()['error'] == 'invalid_input'

    def test_requires_authentication(self, client):
        response = client.post('/projects', json={})
        assert response.status_code == 401


class TestReadProject:
    def test_list_contains_owned_and_joined_projects_only(self, client, owner, member, outsider,
                                                          make_project, api_headers):
        make_project(owner, name='Owned')
        make_project(outsider, members=[member], name='Joined')
        make_project(outsider, name='Elsewhere')

        owner_names = [p['name'] for p in client.get('/projects', headers=api_headers(owner)).get_json()['projects']]
        member_names = [p['name'] for p in client.get('/projects', headers=api_headers(member)).get_json()['projects']]

        assert owner_names == ['Owned']
        assert member_names == ['Joined']

    def test_member_can_read(self, client, owner, member, make_project, api_headers):
        project = make_project(owner, members=[member])

        response = client.get(f'/projects/{project.id}', headers=api_headers(member))

        assert response.status_code == 200
        assert response.get_json()['my_role'] == 'Member'

    def test_outsider_gets_not_found(self, client, owner, outsider, make_project, api_headers):
        project = make_project(owner)

        response = client.get(f'/projects/{project.id}', headers=api_headers(outsider))

        assert response.status_code == 404
        assert response.get_json()['error'] == 'not_found'

    def test_deleted_project_is_not_found(self, client, owner, make_project, api_headers):
        project = make_project(owner)

        assert client.delete(f'/projects/{project.id}', headers=api_headers(owner)).status_code == 200
        assert client.get(f'/projects/{project.id}', headers=api_headers(owner)).status_code == 404
        assert db.session.get(Project, project.id) is not None


class TestUpdateProject:
    def test_owner_updates_allowed_fields(self, client, owner, make_project, api_headers):
        project = make_project(owner)

        response = client.patch(f'/projects/{project.id}', json={'name': 'Renamed', 'priority': 'High'},
                                headers=api_headers(owner))

        body = response.get_json()
        assert response.status_code == 200
        assert body['project']['name'] == 'Renamed'
        assert body['changes']['priority'] == {'old': 'Medium', 'new': 'High'}

    def test_member_cannot_update(self, client, owner, member, make_project, api_headers):
        project = make_project(owner, members=[member])

        response = client.patch(f'/projects/{project.id}', json={'name': 'Hijacked'}, headers=api_headers(member))

        assert response.status_code == 403
        assert db.session.get(Project, project.id).name == 'Website Redesign'

    def test_protected_fields_are_rejected(self, client, owner, outsider, make_project, api_headers):
        project = make_project(owner)

        response = client.patch(f'/projects/{project.id}', json={'owner_id': outsider.id},
                                headers=api_headers(owner))

        assert response.status_code == 400
        assert db.session.get(Project, project.id).owner_id == owner.id

    def test_member_cannot_delete(self, client, owner, member, make_project, api_headers):
        project = make_project(owner, members=[member])
        response = client.delete(f'/projects/{project.id}', headers=api_headers(member))
        assert response.status_code == 403


class TestProjectStatus:
    def test_member_changes_status(self, client, owner, member, make_project, state_named, api_headers):
        project = make_project(owner, members=[member])

        response = client.patch(f'/projects/{project.id}/status', json={'status_id': state_named('Closed').id},
                                headers=api_headers(member))

        assert response.status_code == 200
        assert response.get_json()['project']['status']['name'] == 'Closed'

    def test_task_state_rejected(self, client, owner, make_project, state_named, api_headers):
        project = make_project(owner)

        response = client.patch(f'/projects/{project.id}/status', json={'status_id': state_named('Done').id},
                                headers=api_headers(owner))

        assert response.status_code == 400
        assert response.get_json()['error'] == 'invalid_state'

    def test_outsider_gets_not_found(self, client, owner, outsider, make_project, state_named, api_headers):
        project = make_project(owner)

        response = client.patch(f'/projects/{project.id}/status', json={'status_id': state_named('Active').id},
                                headers=api_headers(outsider))

        assert response.status_code == 404


class TestMembership:
    def test_add_member(self, client, owner, member, make_project, role_named, api_headers):
        project = make_project(owner)
        version = project.version

        response = client.post(f'/projects/{project.id}/members',
                               json={'user_id': member.id, 'role_id': role_named('Member').id},
                               headers=api_headers(owner))

        assert response.status_code == 201
        project = db.session.get(Project, project.id)
        assert [m.user_id for m in project.members] == [member.id]
        assert project.members[0].joined_at is not None
        assert project.version == version + 1
        assert Notification.query.filter_by(user_id=member.id, type='member_added').count() == 1

    def test_concurrent_edit_conflicts(self, client, owner, member, make_project, role_named, api_headers,
                                       monkeypatch):
        project = make_project(owner)
        project_id = project.id
        touch_project = projects.touch_project

        def touch_after_concurrent_write(target):
            # 另一個請求在這次 commit 之前先改了同一個專案
            table = Project.__table__
            db.session.connection().execute(
                table.update().where(table.c.id == target.id).values(version=table.c.version + 1)
            )
            touch_project(target)

        monkeypatch.setattr(projects, 'touch_project', touch_after_concurrent_write)

        response = client.post(f'/projects/{project_id}/members',
                               json={'user_id': member.id, 'role_id': role_named('Member').id},
                               headers=api_headers(owner))

        assert response.status_code == 409
        assert response.get_json()['error'] == 'conflict'
        assert db.session.get(Project, project_id).members == []
        assert Notification.query.filter_by(user_id=member.id).count() == 0

    def test_adding_existing_member_conflicts(self, client, owner, member, make_project, role_named, api_headers):
        project = make_project(owner, members=[member])

        response = client.post(f'/projects/{project.id}/members',
                               json={'user_id': member.id, 'role_id': role_named('Member').id},
                               headers=api_headers(owner))

        assert response.status_code == 409
        assert len(db.session.get(Project, project.id).members) == 1

    def test_adding_owner_conflicts(self, client, owner, make_project, role_named, api_headers):
        project = make_project(owner)

        response = client.post(f'/projects/{project.id}/members',
                               json={'user_id': owner.id, 'role_id': role_named('Member').id},
                               headers=api_headers(owner))

        assert response.status_code == 409

    def test_unknown_role_or_user(self, client, owner, member, make_project, role_named, api_headers):
        project = make_project(owner)

        bad_role = client.post(f'/projects/{project.id}/members', json={'user_id': member.id, 'role_id': 999},
                               headers=api_headers(owner))
        bad_user = client.post(f'/projects/{project.id}/members',
                               json={'user_id': 999, 'role_id': role_named('Member').id},
                               headers=api_headers(owner))

        assert bad_role.status_code == 400
        assert bad_user.status_code == 400
        assert db.session.get(Project, project.id).members == []

    def test_only_owner_manages_members(self, client, owner, member, outsider, make_project, role_named,
                                        api_headers):
        project = make_project(owner, members=[member])

        response = client.post(f'/projects/{project.id}/members',
                               json={'user_id': outsider.id, 'role_id': role_named('Member').id},
                               headers=api_headers(member))

        assert response.status_code == 403

    def test_remove_member(self, client, owner, member, make_project, api_headers):
        project = make_project(owner, members=[member])

        response = client.delete(f'/projects/{project.id}/members/{member.id}', headers=api_headers(owner))

        assert response.status_code == 200
        assert db.session.get(Project, project.id).members == []

    def test_removing_non_member_is_not_found(self, client, owner, member, outsider, make_project, api_headers):
        project = make_project(owner, members=[member])

        response = client.delete(f'/projects/{project.id}/members/{outsider.id}', headers=api_headers(owner))

        assert response.status_code == 404
        assert len(db.session.get(Project, project.id).members) == 1

    def test_list_members(self, client, owner, member, make_project, api_headers):
        project = make_project(owner, members=[member])

        body = client.get(f'/projects/{project.id}/members', headers=api_headers(member)).get_json()

        assert body['owner']['id'] == owner.id
        assert body['total'] == 1
        assert body['members'][0]['user']['id'] == member.id
        assert body['members'][0]['role']['name'] == 'Member'


class TestStatsAndActivity:
    def test_stats_counts_final_states_as_completed(self, client, owner, make_project, make_task, api_headers):
        project = make_project(owner)
        make_task(project, owner, status='Done')
        make_task(project, owner, status='To Do')

        body = client.get(f'/projects/{project.id}/stats', headers=api_headers(owner)).get_json()

        assert body['tasks']['total'] == 2
        assert body['tasks']['completed'] == 1
        assert body['tasks']['open'] == 1
        assert body['completion_rate'] == 50.0

    def test_activity_is_listed_newest_first(self, client, owner, make_project, api_headers):
        project = make_project(owner)
        client.patch(f'/projects/{project.id}', json={'name': 'One'}, headers=api_headers(owner))
        client.patch(f'/projects/{project.id}', json={'name': 'Two'}, headers=api_headers(owner))

        body = client.get(f'/projects/{project.id}/activity', headers=api_headers(owner)).get_json()

        assert body['total'] == 2
        assert body['activities'][0]['details']['changes']['name']['new'] == 'Two'
