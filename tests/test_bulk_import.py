import unittest
from io import BytesIO

from openpyxl import Workbook
from werkzeug.datastructures import FileStorage

from builders import AppTestCase, make_section, make_student, make_teacher, make_user
from attendance_portal import bulk_import, security, db
from attendance_portal.models import User, Student, Teacher, Badge, Section


def upload(text, filename='import.csv'):
    data = text.encode('utf-8') if isinstance(text, str) else text
    return FileStorage(stream=BytesIO(data), filename=filename)


def workbook_upload(rows, filename='import.xlsx'):
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    out = BytesIO()
    wb.save(out)
    return upload(out.getvalue(), filename)


class RollNumberTests(unittest.TestCase):

    def test_valid_roll_numbers(self):
        for roll in ('2023-CS-626', '2024-SE-1', '2022-BBA-0001'):
            self.assertTrue(bulk_import.is_valid_roll_number(roll), roll)

    def test_invalid_roll_numbers(self):
        for roll in ('', '23-CS-626', '2023-C-626', '2023-CSSE-626', '2023-CS-12345',
                     '2023-C5-626', '2023CS626', '2023-CS-62a'):
            self.assertFalse(bulk_import.is_valid_roll_number(roll), roll)

    def test_email_format(self):
        self.assertTrue(bulk_import.is_valid_email('a.b@uni.edu'))
        self.assertFalse(bulk_import.is_valid_email('not-an-email'))
        self.assertFalse(bulk_import.is_valid_email(''))


class StudentImportTests(AppTestCase):

    def setUp(self):
        super().setUp()
        self.section = make_section('A')

    def test_valid_csv(self):
        result = bulk_import.validate_students_csv(upload(
            "FullName,Email,FatherName,RollNumber\n"
            "Ali Khan,Ali@Uni.edu,Ahmed,2024-CS-001\n"
            "Sara Malik,sara@uni.edu,Malik,2024-CS-002\n"), self.section.id)
        self.assertTrue(result.is_valid)
        self.assertEqual(result.total_records, 2)
        self.assertEqual(result.valid_records[0].email, 'ali@uni.edu')

    def test_row_errors_are_collected(self):
        result = bulk_import.validate_students_csv(upload(
            "FullName,Email,FatherName,RollNumber\n"
            ",bad-email,,2024-CS-001\n"
            "Sara,sara@uni.edu,Malik,2024CS002\n"), self.section.id)
        self.assertEqual(result.error_count, 2)
        first, second = result.errors
        self.assertEqual(first.row_number, 2)
        self.assertIn('Full name is required', first.messages)
        self.assertIn('Invalid email format', first.messages)
        self.assertIn('Father name is recommended', first.messages)
        self.assertEqual(second.messages, [bulk_import.ROLL_NUMBER_HINT])

    def test_duplicates_against_database_and_file(self):
        make_student(self.section, '2024-CS-001', email='taken@uni.edu')
        result = bulk_import.validate_students_csv(upload(
            "FullName,Email,FatherName,RollNumber\n"
            "One,taken@uni.edu,F,2024-CS-001\n"
            "Two,two@uni.edu,F,2024-CS-002\n"
            "Three,two@uni.edu,F,2024-CS-002\n"), self.section.id)
        self.assertEqual(len(result.valid_records), 1)
        self.assertEqual(result.errors[0].messages, ['Email already exists', 'Roll number already exists'])
        self.assertEqual(result.errors[1].messages, ['Duplicate email in file', 'Duplicate roll number in file'])

    def test_legacy_rows_need_existing_section(self):
        result = bulk_import.validate_students_csv(upload(
            "FullName,Email,SectionName,BadgeNumber\n"
            "Ali,ali@uni.edu,A,2024-CS-001\n"
            "Sara,sara@uni.edu,Z,2024-CS-002\n"))
        self.assertEqual(len(result.valid_records), 1)
        self.assertEqual(result.errors[0].messages, ["Section 'Z' does not exist"])

    def test_excel_upload(self):
        result = bulk_import.validate_students_file(workbook_upload([
            ['FullName', 'Email', 'FatherName', 'RollNumber'],
            ['Ali Khan', 'ali@uni.edu', 'Ahmed', '2024-CS-001'],
            [None, None, None, None],
            ['Sara', 'sara@uni.edu', 'Malik', 'bad'],
        ]), self.section.id)
        self.assertEqual(len(result.valid_records), 1)
        self.assertEqual(result.errors[0].row_number, 4)

    def test_unreadable_workbook(self):
        result = bulk_import.validate_students_file(upload(b'not a workbook', 'broken.xlsx'), self.section.id)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.errors[0].row_number, 0)
        self.assertTrue(result.errors[0].messages[0].startswith('File parsing error:'))

    def test_row_limit(self):
        rows = "".join(f"S{i},s{i}@uni.edu,F,2024-CS-{i:03d}\n" for i in range(1, 6))
        result = bulk_import.validate_students_csv(
            upload("FullName,Email,FatherName,RollNumber\n" + rows), self.section.id, max_rows=3)
        self.assertEqual(result.total_records, 3)
        self.assertEqual(len(result.valid_records), 3)
        self.assertEqual(result.errors[0].row_number, 0)

    def test_create_students(self):
        make_user('exists@uni.edu')
        records = [
            bulk_import.StudentImportRecord(full_name='Ali', email='ali@uni.edu', father_name='F',
                                            roll_number='2024-CS-001'),
            bulk_import.StudentImportRecord(full_name='Old', email='exists@uni.edu', father_name='F',
                                            roll_number='2024-CS-002'),
        ]
        result = bulk_import.create_students(records, self.section.id)
        self.assertEqual(result.success_count, 1)
        self.assertEqual(result.skipped_emails, ['exists@uni.edu'])
        cred = result.credentials[0]
        self.assertEqual(cred.identifier, '2024-CS-001')
        self.assertEqual(cred.section_name, 'A')
        user = User.query.filter_by(email='ali@uni.edu').first()
        self.assertTrue(security.verify_password(cred.password, user.password_hash))
        self.assertEqual(user.student.roll_no, '2024-CS-001')

    def test_created_passwords_are_distinct(self):
        records = [bulk_import.StudentImportRecord(full_name=f'Student {i}', email=f's{i}@uni.edu', father_name='F',
                                                   roll_number=f'2024-CS-{i:03d}') for i in range(1, 6)]
        result = bulk_import.create_students(records, self.section.id, password_length=8)
        self.assertEqual(result.success_count, 5)
        self.assertEqual(len({c.password for c in result.credentials}), 5)
        self.assertTrue(all(len(c.password) == 8 for c in result.credentials))

    def test_non_utf8_csv_keeps_every_character(self):
        result = bulk_import.validate_students_csv(upload(
            'FullName,Email,FatherName,RollNumber\nJos\u00e9 Ali,jose@uni.edu,Ahmed,2024-CS-001\n'.encode('cp1252')),
            self.section.id)
        self.assertEqual(len(result.valid_records), 1)
        self.assertEqual(result.valid_records[0].full_name, 'Jos\ufffd Ali')

    def test_create_legacy_students(self):
        records = [bulk_import.StudentImportRecord(full_name='Ali', email='ali@uni.edu',
                                                   section_name='A', badge_number='2024-CS-009')]
        result = bulk_import.create_students(records)
        self.assertEqual(result.success_count, 1)
        student = Student.query.filter_by(roll_no='2024-CS-009').first()
        self.assertEqual(student.section_id, self.section.id)
        self.assertEqual(student.father_name, 'Not Provided')


class TeacherImportTests(AppTestCase):

    def test_validate_and_create(self):
        make_teacher('T-1', 'first@uni.edu')
        result = bulk_import.validate_teachers_csv(upload(
            "FullName,Email,BadgeNumber\n"
            "New Teacher,new@uni.edu,T-2\n"
            "Copy,copy@uni.edu,T-2\n"
            "Clash,clash@uni.edu,T-1\n"))
        self.assertEqual(len(result.valid_records), 1)
        self.assertEqual(result.errors[0].messages, ["Duplicate badge number 'T-2' in file"])
        self.assertEqual(result.errors[1].messages, ["Badge number 'T-1' already exists"])

        created = bulk_import.create_teachers(result.valid_records)
        self.assertEqual(created.success_count, 1)
        self.assertEqual(created.credentials[0].role, 'Teacher')
        self.assertEqual(Teacher.query.filter_by(badge_number='T-2').first().user.email, 'new@uni.edu')


class BadgeSectionImportTests(AppTestCase):

    def test_badges(self):
        db.session.add(Badge(name="BSCS"))
        db.session.commit()
        result = bulk_import.validate_badges_text("BadgeName\nBSSE\nbsse\nBSCS\n\nBBA\n")
        self.assertEqual(result.valid_items, ['BSSE', 'BBA'])
        self.assertEqual(result.errors, [
            "Line 3: Duplicate badge 'bsse' found in the file.",
            "Line 4: Badge 'BSCS' already exists in the system.",
        ])
        self.assertEqual(bulk_import.create_badges(result.valid_items), 2)

    def test_badge_header_required(self):
        result = bulk_import.validate_badges_text("Name\nBSCS\n")
        self.assertFalse(result.is_valid)
        self.assertTrue(result.errors[0].startswith('Line 1: Invalid header.'))

    def test_sections(self):
        make_section('A', 'BSCS', 1, '2024-2028')
        result = bulk_import.validate_sections_text(
            "BadgeName,Semester,Session,SectionName\n"
            "BSCS,1,2024-2028,B\n"
            "BSCS,1,2024-2028,A\n"
            "BSCS,9,2024-2028,C\n"
            "MBA,1,2024-2026,A\n"
            "BSCS,2\n")
        self.assertEqual(len(result.valid_items), 1)
        self.assertEqual(len(result.errors), 4)
        self.assertIn("Invalid semester '9'", result.errors[1])
        self.assertIn("Badge 'MBA' does not exist", result.errors[2])
        self.assertEqual(bulk_import.create_sections(result.valid_items), 1)
        self.assertEqual(Section.query.count(), 2)


if __name__ == "__main__":
    unittest.main()
