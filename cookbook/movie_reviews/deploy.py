"""Movie reviews deployment.

Load with the CLI:

    cloudcode --deploy cookbook/movie_reviews/deploy.py run averageStars -p '{"movie": "The Matrix"}'

or from Python with ``cloud.load("cookbook/movie_reviews/deploy.py")``.

Registers:
    averageStars   mean star rating for a movie
    Review         beforeSave bounds stars to 1..5 and trims the comment
    Review         afterSave keeps a per-movie review count on Movie
    Review         beforeDelete refuses to delete five-star reviews
"""

from cloudcode import Entity

MAX_COMMENT = 140


def deploy(cloud):
    @cloud.define("averageStars")
    def average_stars(request, response):
        movie = request.params.get("movie")
        if not isinstance(movie, str):
            response.error("movie must be a string")
            return
        reviews = request.objects.query("Review").equal_to("movie", movie).find()
        if not reviews:
            response.error("movie lookup failed")
            return
        response.success(sum(r["stars"] for r in reviews) / len(reviews))

    @cloud.before_save("Review")
    def check_review(request, response):
        review = request.object
        stars = review.get("stars")
        if not isinstance(stars, int) or not 1 <= stars <= 5:
            response.reject("stars must be an integer from 1 to 5")
            return
        comment = review.get("comment")
        if isinstance(comment, str) and len(comment) > MAX_COMMENT:
            review.set("comment", comment[: MAX_COMMENT - 3] + "...")
        response.allow()

    @cloud.after_save("Review")
    def count_reviews(request, response):
        movie = request.object["movie"]
        movies = request.objects.query("Movie").equal_to("title", movie)
        record = movies.first()
        if record is None:
            record = request.objects.save(Entity("Movie", {"title": movie, "reviews": 0}))
        record.set("reviews", request.objects.query("Review").equal_to("movie", movie).count())
        request.objects.save(record)

    @cloud.before_delete("Review")
    def keep_five_stars(request, response):
        if request.object.get("stars") == 5:
            response.reject("five-star reviews are kept")
            return
        response.allow()
